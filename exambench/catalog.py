"""Read-only subject -> topic -> subtopic taxonomy used to scope and validate predictions."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Iterator, Optional

from pydantic import ValidationError

from exambench.errors import DatasetError
from exambench.types import Subject, Subtopic, Topic


def _check_unique(ids: Iterable[str], scope: str) -> None:
    seen: set[str] = set()
    for item_id in ids:
        if item_id in seen:
            raise DatasetError(f"Duplicate id '{item_id}' in {scope}")
        seen.add(item_id)


class TopologyCatalog:
    """Immutable three-level catalog with id lookups at every level."""

    def __init__(self, subjects: Iterable[Subject], generated_at: Optional[str] = None) -> None:
        self._subjects: tuple[Subject, ...] = tuple(subjects)
        self.generated_at = generated_at

        _check_unique((s.id for s in self._subjects), "catalog subjects")
        for subject in self._subjects:
            _check_unique((t.id for t in subject.topics), f"subject {subject.id}")
            for topic in subject.topics:
                _check_unique((st.id for st in topic.subtopics), f"topic {topic.id}")

        self._subject_index = {s.id: s for s in self._subjects}

    @classmethod
    def from_dict(cls, raw: dict | list) -> "TopologyCatalog":
        if isinstance(raw, list):
            raw = {"subjects": raw}
        try:
            subjects = [Subject.model_validate(s) for s in raw.get("subjects") or []]
        except ValidationError as exc:
            raise DatasetError(f"Invalid topology catalog: {exc}") from exc
        return cls(subjects, generated_at=raw.get("generatedAt") or raw.get("generated_at"))

    @classmethod
    def load(cls, path: str | Path) -> "TopologyCatalog":
        path = Path(path)
        if not path.exists():
            raise DatasetError(f"Topology catalog not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    @property
    def subjects(self) -> tuple[Subject, ...]:
        return self._subjects

    def __len__(self) -> int:
        return len(self._subjects)

    def __iter__(self) -> Iterator[Subject]:
        return iter(self._subjects)

    def find_subject(self, subject_id: Optional[str]) -> Optional[Subject]:
        if not subject_id:
            return None
        return self._subject_index.get(subject_id)

    def find_topic(self, subject_id: Optional[str], topic_id: Optional[str]) -> Optional[Topic]:
        subject = self.find_subject(subject_id)
        if subject is None or not topic_id:
            return None
        return next((t for t in subject.topics if t.id == topic_id), None)

    def find_subtopic(
        self,
        subject_id: Optional[str],
        topic_id: Optional[str],
        subtopic_id: Optional[str],
    ) -> Optional[Subtopic]:
        topic = self.find_topic(subject_id, topic_id)
        if topic is None or not subtopic_id:
            return None
        return next((st for st in topic.subtopics if st.id == subtopic_id), None)

    def all_topics(self) -> list[tuple[Subject, Topic]]:
        return [(s, t) for s in self._subjects for t in s.topics]

    def all_subtopics(self) -> list[tuple[Subject, Topic, Subtopic]]:
        return [(s, t, st) for s in self._subjects for t in s.topics for st in t.subtopics]

    def locate_topic(self, topic_id: Optional[str]) -> Optional[tuple[Subject, Topic]]:
        """Find a topic anywhere in the catalog, regardless of subject."""
        if not topic_id:
            return None
        return next(((s, t) for s, t in self.all_topics() if t.id == topic_id), None)

    def locate_subtopic(self, subtopic_id: Optional[str]) -> Optional[tuple[Subject, Topic, Subtopic]]:
        if not subtopic_id:
            return None
        return next((entry for entry in self.all_subtopics() if entry[2].id == subtopic_id), None)

    def contains(self, stage: str, item_id: Optional[str]) -> bool:
        if stage == "subject":
            return self.find_subject(item_id) is not None
        if stage == "topic":
            return self.locate_topic(item_id) is not None
        if stage == "subtopic":
            return self.locate_subtopic(item_id) is not None
        raise ValueError(f"Unknown topology stage: {stage}")

    def format_ids(
        self,
        subject_id: Optional[str],
        topic_id: Optional[str],
        subtopic_id: Optional[str],
    ) -> str:
        """Render ids as 'Subject › Topic › Subtopic' names, with '—' for unresolved levels."""
        subject = self.find_subject(subject_id)
        topic = self.find_topic(subject_id, topic_id)
        subtopic = self.find_subtopic(subject_id, topic_id, subtopic_id)
        parts = [
            subject.name if subject else "—",
            topic.name if topic else "—",
            subtopic.name if subtopic else "—",
        ]
        return " › ".join(parts)
