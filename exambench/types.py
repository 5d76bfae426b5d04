"""Core data models for questions, catalogs, profiles, attempts, and run summaries."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Question (input)
# ---------------------------------------------------------------------------

class QuestionType(str, Enum):
    MCQ = "MCQ"
    MSQ = "MSQ"
    NAT = "NAT"
    TRUE_FALSE = "TRUE_FALSE"
    DESCRIPTIVE = "DESCRIPTIVE"


class QuestionOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    order: int
    text: str


class NumericRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: Optional[float] = None
    max: Optional[float] = None
    precision: Optional[int] = None


class SingleAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["single"] = "single"
    correct_option: int


class MultipleAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["multiple"] = "multiple"
    correct_options: list[int] = Field(min_length=1)


class NumericAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["numeric"] = "numeric"
    range: NumericRange = Field(default_factory=NumericRange)
    accepted_answers: list[str] = Field(default_factory=list)
    case_sensitive: bool = False


class BooleanAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["boolean"] = "boolean"
    value: bool


class DescriptiveAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["descriptive"] = "descriptive"
    accepted_answers: list[str] = Field(default_factory=list)
    case_sensitive: bool = False


AnswerKey = Annotated[
    Union[SingleAnswer, MultipleAnswer, NumericAnswer, BooleanAnswer, DescriptiveAnswer],
    Field(discriminator="kind"),
]

ANSWER_KIND_BY_TYPE: dict[QuestionType, str] = {
    QuestionType.MCQ: "single",
    QuestionType.MSQ: "multiple",
    QuestionType.NAT: "numeric",
    QuestionType.TRUE_FALSE: "boolean",
    QuestionType.DESCRIPTIVE: "descriptive",
}


class QuestionMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "UNKNOWN"
    has_images: bool = False
    tags: list[str] = Field(default_factory=list)
    subject_id: Optional[str] = None
    topic_id: Optional[str] = None
    subtopic_id: Optional[str] = None


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: QuestionType
    prompt: str
    difficulty: str = "UNKNOWN"
    instructions: Optional[str] = None
    options: list[QuestionOption] = Field(default_factory=list)
    answer: AnswerKey
    solution: Optional[str] = None
    metadata: QuestionMetadata = Field(default_factory=QuestionMetadata)

    @model_validator(mode="after")
    def _answer_matches_type(self) -> "Question":
        expected_kind = ANSWER_KIND_BY_TYPE[self.type]
        if self.answer.kind != expected_kind:
            raise ValueError(
                f"Question {self.id}: answer kind '{self.answer.kind}' does not match type {self.type.value}"
            )
        return self


class QuestionSnapshot(BaseModel):
    prompt: str
    type: QuestionType
    difficulty: str
    options: list[QuestionOption] = Field(default_factory=list)
    answer: AnswerKey
    solution: Optional[str] = None
    metadata: QuestionMetadata = Field(default_factory=QuestionMetadata)


class QuestionBank(BaseModel):
    label: str = ""
    generated_at: Optional[str] = None
    filters: list[str] = Field(default_factory=list)
    stats: dict[str, Any] = Field(default_factory=dict)
    questions: list[Question] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Topology catalog
# ---------------------------------------------------------------------------

class Subtopic(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class Topic(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    subtopics: list[Subtopic] = Field(default_factory=list)


class Subject(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    topics: list[Topic] = Field(default_factory=list)


TopologyStage = Literal["subject", "topic", "subtopic"]
TOPOLOGY_STAGES: tuple[TopologyStage, ...] = ("subject", "topic", "subtopic")


# ---------------------------------------------------------------------------
# Profile and bindings
# ---------------------------------------------------------------------------

BindingCapability = Literal["text-to-text", "image-to-text"]


class ModelBinding(BaseModel):
    id: str
    name: str = ""
    capability: BindingCapability = "text-to-text"
    base_url: str = "http://localhost:1234"
    api_key: Optional[str] = None
    model_id: str = ""
    temperature: float = 0.0
    max_output_tokens: int = 1024
    request_timeout_ms: int = 120_000
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    default_system_prompt: str = ""
    supports_json_mode: Optional[bool] = None


class PipelineAssignment(BaseModel):
    id: str
    label: str = ""
    capability: BindingCapability
    binding_id: Optional[str] = None
    enabled: bool = True


class StepConfig(BaseModel):
    id: str
    label: str = ""
    description: Optional[str] = None
    prompt_template: str = ""
    enabled: bool = True


class Profile(BaseModel):
    id: str
    name: str = "Untitled profile"
    schema_version: int = 2
    bindings: list[ModelBinding] = Field(default_factory=list)
    pipeline: list[PipelineAssignment] = Field(default_factory=list)
    benchmark_steps: Optional[list[StepConfig]] = None
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Model output records
# ---------------------------------------------------------------------------

class ModelResponse(BaseModel):
    answer: str = ""
    explanation: Optional[str] = None
    confidence: Optional[float] = None
    raw: Any = None


class TopologyStageResult(BaseModel):
    stage: TopologyStage
    id: Optional[str] = None
    confidence: Optional[float] = None
    raw: Any = None
    # ids of earlier stages echoed back by the model, if any
    subject_id: Optional[str] = None
    topic_id: Optional[str] = None


class TopologyPrediction(BaseModel):
    subject_id: Optional[str] = None
    subject_confidence: Optional[float] = None
    topic_id: Optional[str] = None
    topic_confidence: Optional[float] = None
    subtopic_id: Optional[str] = None
    subtopic_confidence: Optional[float] = None
    stages: dict[str, TopologyStageResult] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)

    def commit(self, result: TopologyStageResult) -> None:
        setattr(self, f"{result.stage}_id", result.id)
        setattr(self, f"{result.stage}_confidence", result.confidence)
        self.stages[result.stage] = result
        self.raw[result.stage] = result.raw


class EvaluationMetrics(BaseModel):
    confidence: Optional[float] = None
    subject_confidence: Optional[float] = None
    topic_confidence: Optional[float] = None
    subtopic_confidence: Optional[float] = None
    subject_match: Optional[bool] = None
    topic_match: Optional[bool] = None
    subtopic_match: Optional[bool] = None
    subject_expected: Optional[bool] = None
    topic_expected: Optional[bool] = None
    subtopic_expected: Optional[bool] = None
    subject_provided: Optional[bool] = None
    topic_provided: Optional[bool] = None
    subtopic_provided: Optional[bool] = None


class Evaluation(BaseModel):
    model_config = ConfigDict(frozen=True)

    expected: str = ""
    received: str = ""
    passed: bool = False
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    notes: Optional[str] = None
    metrics: EvaluationMetrics = Field(default_factory=EvaluationMetrics)


# ---------------------------------------------------------------------------
# Attempt (execution record)
# ---------------------------------------------------------------------------

class StepUsage(BaseModel):
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class StepResult(BaseModel):
    id: str
    label: str = ""
    order: int
    prompt: str
    request_payload: dict[str, Any] = Field(default_factory=dict)
    response_payload: Any = None
    response_text: str = ""
    latency_ms: float = 0.0
    usage: Optional[StepUsage] = None
    json_format: Optional[str] = None
    topology_stage: Optional[TopologyStageResult] = None
    model_response: Optional[ModelResponse] = None
    evaluation: Optional[Evaluation] = None
    notes: list[str] = Field(default_factory=list)


class ImageSummary(BaseModel):
    url: str
    text: str
    status: Literal["ok", "skipped", "error"] = "ok"
    binding_id: str = ""
    confidence: Optional[float] = None


class Attempt(BaseModel):
    id: str
    run_id: str = ""
    question_id: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime = Field(default_factory=utcnow)
    latency_ms: float = 0.0
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    request_payload: dict[str, Any] = Field(default_factory=dict)
    response_payload: Any = None
    response_text: str = ""
    model_response: Optional[ModelResponse] = None
    evaluation: Evaluation = Field(default_factory=Evaluation)
    topology_prediction: Optional[TopologyPrediction] = None
    topology_evaluation: Optional[Evaluation] = None
    steps: list[StepResult] = Field(default_factory=list)
    image_summaries: list[ImageSummary] = Field(default_factory=list)
    error: Optional[str] = None
    question_snapshot: QuestionSnapshot


# ---------------------------------------------------------------------------
# Run Summary
# ---------------------------------------------------------------------------

class RunStatus(str, Enum):
    DRAFT = "draft"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunMetrics(BaseModel):
    accuracy: float = 0.0
    average_latency_ms: float = 0.0
    total_latency_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    passed_count: int = 0
    failed_count: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    topology_accuracy: float = 0.0
    topology_passed_count: int = 0
    topology_failed_count: int = 0
    topology_subject_accuracy: float = 0.0
    topology_subject_passed_count: int = 0
    topology_subject_failed_count: int = 0
    topology_topic_accuracy: float = 0.0
    topology_topic_passed_count: int = 0
    topology_topic_failed_count: int = 0
    topology_subtopic_accuracy: float = 0.0
    topology_subtopic_passed_count: int = 0
    topology_subtopic_failed_count: int = 0


class DatasetInfo(BaseModel):
    label: str = ""
    total_questions: int = 0
    filters: list[str] = Field(default_factory=list)


class BenchmarkRun(BaseModel):
    id: str
    label: str = ""
    profile_id: str = ""
    profile_name: str = ""
    model_id: str = ""
    status: RunStatus = RunStatus.DRAFT
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    question_ids: list[str] = Field(default_factory=list)
    dataset: DatasetInfo = Field(default_factory=DatasetInfo)
    metrics: RunMetrics = Field(default_factory=RunMetrics)
    attempts: list[Attempt] = Field(default_factory=list)
    summary: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

Severity = Literal["info", "warn", "error"]
JsonFormat = Literal["json_object", "json_schema", "none"]


class CheckLog(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    severity: Severity = "info"


class CompatibilityCheckStep(BaseModel):
    id: str
    name: str
    status: Literal["pass", "fail", "pending", "skipped"] = "pending"
    logs: list[CheckLog] = Field(default_factory=list)
    error: Optional[str] = None

    def log(self, message: str, severity: Severity = "info") -> None:
        self.logs.append(CheckLog(message=message, severity=severity))


class CompatibilityCheckResult(BaseModel):
    compatible: bool = False
    summary: str = ""
    json_format: JsonFormat = "none"
    steps: list[CompatibilityCheckStep] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DiagnosticsLevel(str, Enum):
    HANDSHAKE = "HANDSHAKE"
    READINESS = "READINESS"


class DiagnosticsResult(BaseModel):
    id: str
    profile_id: str
    level: DiagnosticsLevel
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime = Field(default_factory=utcnow)
    status: Literal["pass", "fail"] = "fail"
    summary: str = ""
    supports_json_mode: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    logs: list[CheckLog] = Field(default_factory=list)
