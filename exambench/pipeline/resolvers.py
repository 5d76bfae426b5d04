"""Subject, topic and subtopic resolvers for the topology cascade.

Each resolver renders its stage prompt from the step template and the cascade
state so far, then parses the completion into a stage result with notes for
missing ids, low confidence, catalog misses and cross-stage inconsistencies.
Catalog misses are reported, never raised: grading decides what they cost.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Optional

from exambench.adapters.schemas import SchemaHint
from exambench.catalog import TopologyCatalog
from exambench.config import settings
from exambench.parsing import parse_stage_prediction
from exambench.pipeline.steps import DEFAULT_TEMPLATES, STAGE_BY_STEP_ID
from exambench.pipeline.templates import TemplateContext, render_template
from exambench.types import StepConfig, TopologyPrediction, TopologyStage, TopologyStageResult


@dataclass
class StageOutcome:
    result: TopologyStageResult
    notes: list[str] = field(default_factory=list)


def consistency_notes(
    source: str,
    echoed: dict[str, Optional[str]],
    prediction: TopologyPrediction,
) -> list[str]:
    """Notes for echoed ids that disagree with the committed cascade. The cascade wins."""
    notes = []
    for stage, echoed_id in echoed.items():
        committed = getattr(prediction, f"{stage}_id")
        if echoed_id and echoed_id != committed:
            notes.append(
                f"Inconsistent {stage}: {source} stage echoed '{echoed_id}' "
                f"but the cascade committed '{committed}'; keeping '{committed}'."
            )
    return notes


class StageResolver(abc.ABC):
    stage: TopologyStage
    step_id: str
    schema_hint: SchemaHint

    def __init__(self, catalog: TopologyCatalog, low_confidence_threshold: Optional[float] = None) -> None:
        self.catalog = catalog
        self.low_confidence_threshold = (
            settings.low_confidence_threshold
            if low_confidence_threshold is None
            else low_confidence_threshold
        )

    def build_prompt(self, step: StepConfig, ctx: TemplateContext) -> str:
        template = step.prompt_template.strip() or DEFAULT_TEMPLATES[self.step_id]
        return render_template(template, ctx)

    def parse(self, text: str, prediction: TopologyPrediction) -> StageOutcome:
        result = parse_stage_prediction(self.stage, text)
        notes: list[str] = []
        label = self.stage.capitalize()

        if result.id is None:
            notes.append(f"{label} stage returned no id.")
        else:
            notes.extend(self.catalog_notes(result.id, prediction))

        if result.confidence is not None and result.confidence < self.low_confidence_threshold:
            notes.append(f"{label} confidence {result.confidence:.2f} is below {self.low_confidence_threshold:.2f}.")

        echoed = {"subject": result.subject_id, "topic": result.topic_id}
        notes.extend(consistency_notes(self.stage, echoed, prediction))
        return StageOutcome(result=result, notes=notes)

    @abc.abstractmethod
    def catalog_notes(self, item_id: str, prediction: TopologyPrediction) -> list[str]:
        """Notes for an id that is missing from the catalog or sits under another parent."""
        ...


class SubjectResolver(StageResolver):
    stage: TopologyStage = "subject"
    step_id = "topology-subject"
    schema_hint = SchemaHint.TOPOLOGY_SUBJECT

    def catalog_notes(self, item_id: str, prediction: TopologyPrediction) -> list[str]:
        if self.catalog.find_subject(item_id) is None:
            return [f"Subject '{item_id}' not found in taxonomy."]
        return []


class TopicResolver(StageResolver):
    stage: TopologyStage = "topic"
    step_id = "topology-topic"
    schema_hint = SchemaHint.TOPOLOGY_TOPIC

    def catalog_notes(self, item_id: str, prediction: TopologyPrediction) -> list[str]:
        if self.catalog.find_topic(prediction.subject_id, item_id) is not None:
            return []
        located = self.catalog.locate_topic(item_id)
        if located is None:
            return [f"Topic '{item_id}' not found in taxonomy."]
        parent, _ = located
        return [f"Topic '{item_id}' belongs to subject '{parent.id}', not '{prediction.subject_id}'."]


class SubtopicResolver(StageResolver):
    stage: TopologyStage = "subtopic"
    step_id = "topology-subtopic"
    schema_hint = SchemaHint.TOPOLOGY_SUBTOPIC

    def catalog_notes(self, item_id: str, prediction: TopologyPrediction) -> list[str]:
        found = self.catalog.find_subtopic(prediction.subject_id, prediction.topic_id, item_id)
        if found is not None:
            return []
        located = self.catalog.locate_subtopic(item_id)
        if located is None:
            return [f"Subtopic '{item_id}' not found in taxonomy."]
        _, parent, _ = located
        return [f"Subtopic '{item_id}' belongs to topic '{parent.id}', not '{prediction.topic_id}'."]


_RESOLVERS: dict[TopologyStage, type[StageResolver]] = {
    "subject": SubjectResolver,
    "topic": TopicResolver,
    "subtopic": SubtopicResolver,
}


def resolver_for_step(
    step_id: str,
    catalog: TopologyCatalog,
    low_confidence_threshold: Optional[float] = None,
) -> Optional[StageResolver]:
    stage = STAGE_BY_STEP_ID.get(step_id)
    if stage is None:
        return None
    return _RESOLVERS[stage](catalog, low_confidence_threshold)
