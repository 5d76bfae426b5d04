"""Tests for stage resolvers and catalog scoping in cascade prompts."""

import pytest

from exambench.catalog import TopologyCatalog
from exambench.pipeline.prompts import subtopic_catalog, topic_catalog
from exambench.pipeline.resolvers import (
    StageResolver,
    SubjectResolver,
    SubtopicResolver,
    TopicResolver,
    resolver_for_step,
)
from exambench.pipeline.steps import TOPIC_STEP_ID, default_steps
from exambench.pipeline.templates import TemplateContext
from exambench.types import NumericAnswer, Question, QuestionType, TopologyPrediction

CATALOG = TopologyCatalog.from_dict(
    {
        "subjects": [
            {
                "id": "math",
                "name": "Mathematics",
                "topics": [
                    {"id": "algebra", "name": "Algebra", "subtopics": [{"id": "quadratics", "name": "Quadratics"}]},
                    {"id": "arithmetic", "name": "Arithmetic", "subtopics": [{"id": "primes", "name": "Primes"}]},
                ],
            },
            {
                "id": "physics",
                "name": "Physics",
                "topics": [
                    {"id": "mechanics", "name": "Mechanics", "subtopics": [{"id": "kinematics", "name": "Kinematics"}]},
                ],
            },
        ]
    }
)
QUESTION = Question(
    id="q1",
    type=QuestionType.NAT,
    prompt="Solve x^2 = 9 for x > 0.",
    answer=NumericAnswer(accepted_answers=["3"]),
)


def test_topic_catalog_is_scoped_to_known_subject():
    catalog_slice = topic_catalog(CATALOG, "physics")
    assert catalog_slice.scoped
    assert "- mechanics :: Mechanics" in catalog_slice.text
    assert "algebra" not in catalog_slice.text


def test_unknown_subject_lists_every_topic():
    catalog_slice = topic_catalog(CATALOG, "S1")
    assert not catalog_slice.scoped
    assert "The predicted subject 'S1' was not recognised" in catalog_slice.text
    for topic_id in ("algebra", "arithmetic", "mechanics"):
        assert f"- {topic_id} ::" in catalog_slice.text


def test_missing_topic_lists_every_subtopic():
    catalog_slice = subtopic_catalog(CATALOG, "math", None)
    assert not catalog_slice.scoped
    assert "No topic was predicted." in catalog_slice.text
    for subtopic_id in ("quadratics", "primes", "kinematics"):
        assert f"- {subtopic_id} ::" in catalog_slice.text


def test_topic_prompt_uses_full_list_when_subject_unresolved():
    step = next(s for s in default_steps() if s.id == TOPIC_STEP_ID)
    resolver = resolver_for_step(TOPIC_STEP_ID, CATALOG)
    assert isinstance(resolver, TopicResolver)
    ctx = TemplateContext(question=QUESTION, catalog=CATALOG, prediction=TopologyPrediction(subject_id="S1"))
    prompt = resolver.build_prompt(step, ctx)
    assert "(subject: physics :: Physics)" in prompt
    assert "(subject: math :: Mathematics)" in prompt
    assert "Question (NAT): Solve x^2 = 9 for x > 0." in prompt


def test_subject_resolver_flags_catalog_miss():
    outcome = SubjectResolver(CATALOG, 0.3).parse('{"subjectId": "S1", "confidence": 0.9}', TopologyPrediction())
    assert outcome.result.id == "S1"
    assert outcome.notes == ["Subject 'S1' not found in taxonomy."]


def test_topic_under_wrong_subject_is_noted():
    outcome = TopicResolver(CATALOG, 0.3).parse(
        '{"topicId": "mechanics", "confidence": 0.8}', TopologyPrediction(subject_id="math")
    )
    assert outcome.notes == ["Topic 'mechanics' belongs to subject 'physics', not 'math'."]


def test_low_confidence_and_missing_id_notes():
    outcome = SubtopicResolver(CATALOG, 0.3).parse('{"confidence": 0.1}', TopologyPrediction())
    assert outcome.result.id is None
    assert "Subtopic stage returned no id." in outcome.notes
    assert "Subtopic confidence 0.10 is below 0.30." in outcome.notes


def test_echoed_parent_disagreement_keeps_committed_id():
    prediction = TopologyPrediction(subject_id="math", topic_id="algebra")
    outcome = SubtopicResolver(CATALOG, 0.3).parse(
        '{"subtopicId": "quadratics", "topicId": "arithmetic", "confidence": 0.9}', prediction
    )
    assert outcome.result.id == "quadratics"
    assert any("Inconsistent topic" in note and "keeping 'algebra'" in note for note in outcome.notes)
    assert prediction.topic_id == "algebra"


def test_non_stage_step_has_no_resolver():
    assert resolver_for_step("answer", CATALOG) is None


def test_stage_resolver_base_is_abstract():
    with pytest.raises(TypeError):
        StageResolver(CATALOG)
