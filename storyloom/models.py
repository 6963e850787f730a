"""Core domain models.

All executor, resolver, scheduler and storage functions operate on these types.
Pydantic is used for validation and serialisation at every data boundary.

Narrative definitions (NarrativeDefinition / Act / Input) are immutable once
loaded. Execution records (NarrativeExecution, ActExecution, ActInput) are
written by the executor; ActExecution and ActInput are write-once. TaskState is
owned by the scheduler and the execution tracker.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storyloom.schedule import SchedulePolicy, UtcDatetime


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Narrative definitions
# ---------------------------------------------------------------------------

class GenerationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str = ""  # empty: the backend's configured default
    temperature: float = 0.7
    max_tokens: int = Field(default=1024, gt=0)


class HistoryRetention(str, Enum):
    """How an input is kept in the conversation history seen by later acts."""

    FULL = "full"
    SUMMARY = "summary"
    DROP = "drop"


class TableFormat(str, Enum):
    MARKDOWN = "markdown"
    JSON = "json"
    CSV = "csv"


class TextInput(BaseModel):
    """Literal text, or the contents of a file. Exactly one must be set."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    literal: str | None = None
    path: str | None = None
    history_retention: HistoryRetention = HistoryRetention.FULL

    @model_validator(mode="after")
    def _one_source(self) -> TextInput:
        if (self.literal is None) == (self.path is None):
            raise ValueError("text input needs exactly one of 'literal' or 'path'")
        return self


class TableInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["table"] = "table"
    table_name: str
    filter: dict[str, Any] = Field(default_factory=dict)
    row_limit: int = Field(default=10, gt=0)
    render_format: TableFormat = TableFormat.MARKDOWN
    history_retention: HistoryRetention = HistoryRetention.FULL


class PlatformCommandInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["platform_command"] = "platform_command"
    platform: str
    command: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    history_retention: HistoryRetention = HistoryRetention.FULL


Input = Annotated[
    Union[TextInput, TableInput, PlatformCommandInput],
    Field(discriminator="kind"),
]


FieldType = Literal["string", "integer", "number", "boolean", "array", "object", "any"]


class ExtractionSchema(BaseModel):
    """Shape every extracted row must have."""

    model_config = ConfigDict(frozen=True)

    field_types: dict[str, FieldType] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)
    allow_empty: bool = True


class Act(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    inputs: list[Input] = Field(default_factory=list)
    generation: GenerationConfig
    processors: list[str] = Field(default_factory=list)  # opt-in only
    output_schema: ExtractionSchema | None = None

    @field_validator("name")
    @classmethod
    def _name_is_identifier(cls, v: str) -> str:
        if not v or not v.replace("_", "a").isalnum():
            raise ValueError(f"act name must be alphanumeric/underscore, got {v!r}")
        return v


class CarouselConfig(BaseModel):
    """Run a whole narrative repeatedly, each pass recorded as its own execution.

    With a token_budget, a pass starts only while the tokens spent so far plus
    estimated_tokens_per_iteration still fit in the budget.
    """

    model_config = ConfigDict(frozen=True)

    iterations: int = Field(gt=0)
    continue_on_error: bool = False
    estimated_tokens_per_iteration: int = Field(default=1000, gt=0)
    token_budget: int | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _budget_covers_one_pass(self) -> CarouselConfig:
        if self.token_budget is not None and self.token_budget < self.estimated_tokens_per_iteration:
            raise ValueError("token_budget must cover at least one iteration")
        return self


class NarrativeDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    target_table: str | None = None
    acts: list[Act]
    skip_extraction: bool = False
    carousel: CarouselConfig | None = None

    @field_validator("acts")
    @classmethod
    def _acts_unique(cls, acts: list[Act]) -> list[Act]:
        if not acts:
            raise ValueError("a narrative needs at least one act")
        names = [a.name for a in acts]
        dupes = {n for n in names if names.count(n) > 1}
        if dupes:
            raise ValueError(f"duplicate act names: {sorted(dupes)}")
        return acts

    @property
    def act_order(self) -> list[str]:
        return [a.name for a in self.acts]


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------

class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED)


class FailureReason(str, Enum):
    INPUTS_UNRESOLVED = "inputs_unresolved"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    EXTRACTION_FAILED = "extraction_failed"
    SECURITY_DENIED = "security_denied"
    CANCELLED = "cancelled"
    PERSISTENCE_FAILED = "persistence_failed"

    @property
    def description(self) -> str:
        return _REASON_TEXT[self]


_REASON_TEXT = {
    FailureReason.INPUTS_UNRESOLVED: "could not resolve inputs",
    FailureReason.BACKEND_UNAVAILABLE: "backend unavailable",
    FailureReason.EXTRACTION_FAILED: "extraction failed",
    FailureReason.SECURITY_DENIED: "security denied",
    FailureReason.CANCELLED: "cancelled",
    FailureReason.PERSISTENCE_FAILED: "persistence failed",
}


class NarrativeExecution(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    narrative_name: str
    actor_name: str
    task_id: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    failure_reason: FailureReason | None = None
    error: str | None = None


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class ActInput(BaseModel):
    order: int
    kind: str
    content_ref: str


class ActExecution(BaseModel):
    execution_id: str
    sequence: int
    act_name: str
    generation: GenerationConfig
    response: str  # byte-identical to what the backend returned
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    created_at: datetime
    inputs: list[ActInput] = Field(default_factory=list)


class ProcessorRun(BaseModel):
    """Outcome of one opted-in processor on one act."""

    execution_id: str
    sequence: int
    act_name: str
    processor: str
    ok: bool
    error_kind: str | None = None
    error: str | None = None
    row_count: int | None = None


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

class TaskDefinition(BaseModel):
    """A recurring actor/narrative pairing, as declared in config."""

    task_id: str
    actor_name: str
    narrative: str  # path to the narrative JSON file
    schedule: SchedulePolicy
    enabled: bool = True


class TaskState(BaseModel):
    task_id: str
    actor_name: str
    narrative: str = ""
    last_run: UtcDatetime | None = None
    next_run: UtcDatetime
    consecutive_failures: int = Field(default=0, ge=0)
    is_paused: bool = False
    paused_at: UtcDatetime | None = None
    probe: bool = False  # next run is the single probe after a cooldown
    lease_owner: str | None = None
    lease_expires_at: UtcDatetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def is_leased(self, now: datetime) -> bool:
        return (
            self.lease_owner is not None
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )


# ---------------------------------------------------------------------------
# State entries
# ---------------------------------------------------------------------------

class StateEntry(BaseModel):
    scope: str
    key: str
    value: Any


def execution_scope(execution_id: str) -> str:
    return f"execution-{execution_id}"


def actor_scope(actor_name: str) -> str:
    return f"actor-{actor_name}"
