"""Core contracts for the shopflow workflow system."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Annotated,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Tuple,
    Type,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field, model_validator

if TYPE_CHECKING:
    from .services import ShopServices


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return str(uuid.uuid4())


class Priority(str, Enum):
    """Priority tier whose pool governs a run's steps."""

    HIGH = "high"
    DEFAULT = "default"
    LOW = "low"


class StepKind(str, Enum):
    ACTION = "action"
    MUTATION = "mutation"
    QUERY = "query"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RetryPolicy(BaseModel):
    """Per-step retry policy.

    Attempt ``n`` (1-based) that fails is followed by a delay of
    ``initial_backoff_ms * backoff_multiplier ** (n - 1)`` before attempt
    ``n + 1``, until ``max_attempts`` is reached.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=1, ge=1)
    initial_backoff_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)


@dataclass
class StepContext:
    """Everything a step closure can see while it runs."""

    run_id: str
    attempt: int
    args: BaseModel
    outputs: Dict[str, Any]
    services: "ShopServices"


StepFn = Callable[[StepContext], Awaitable[Any]]


class StepSpec(BaseModel):
    """Defines one step in a workflow."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    fn: StepFn
    kind: StepKind = StepKind.ACTION
    retry: Optional[RetryPolicy] = None
    timeout_s: Optional[float] = None


def action(name: str, fn: StepFn, **kwargs: Any) -> StepSpec:
    return StepSpec(name=name, fn=fn, kind=StepKind.ACTION, **kwargs)


def mutation(name: str, fn: StepFn, **kwargs: Any) -> StepSpec:
    return StepSpec(name=name, fn=fn, kind=StepKind.MUTATION, **kwargs)


def query(name: str, fn: StepFn, **kwargs: Any) -> StepSpec:
    return StepSpec(name=name, fn=fn, kind=StepKind.QUERY, **kwargs)


class WorkflowDefinition(BaseModel):
    """Immutable, named sequence of steps run on one priority pool."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    pool: Priority = Priority.DEFAULT
    args_model: Type[BaseModel]
    steps: Tuple[StepSpec, ...]

    @model_validator(mode="after")
    def _check_steps(self) -> "WorkflowDefinition":
        if not self.steps:
            raise ValueError(f"Workflow {self.name} must declare at least one step")
        names = [step.name for step in self.steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Workflow {self.name} has duplicate step names: {names}")
        return self


@dataclass(frozen=True)
class Success:
    value: Any = None
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Failure:
    error: str
    error_type: str = "Exception"
    ok: bool = field(default=False, init=False)


Outcome = Union[Success, Failure]


class StepEntry(BaseModel):
    """One append-only journal record for a step attempt."""

    step_index: int
    step_name: str
    attempt: int
    status: StepStatus
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    output: Any = None
    retry_delay_ms: Optional[int] = None


class SuccessResult(BaseModel):
    kind: Literal["success"] = "success"
    return_value: Any = None


class ErrorResult(BaseModel):
    kind: Literal["error"] = "error"
    error: str


class CanceledResult(BaseModel):
    kind: Literal["canceled"] = "canceled"


RunResult = Annotated[
    Union[SuccessResult, ErrorResult, CanceledResult], Field(discriminator="kind")
]


class OnComplete(BaseModel):
    """Durable reference to a completion handler plus its opaque context."""

    handler_ref: str
    context: Dict[str, Any] = Field(default_factory=dict)


class WorkflowRun(BaseModel):
    """Persisted state of one workflow execution."""

    id: str = Field(default_factory=new_run_id)
    definition_name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    pool: Priority = Priority.DEFAULT
    cursor: int = 0
    status: RunStatus = RunStatus.RUNNING
    on_complete: Optional[OnComplete] = None
    on_complete_fired: bool = False
    on_complete_error: Optional[str] = None
    result: Optional[RunResult] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    history: List[StepEntry] = Field(default_factory=list)

    def outputs(self, definition: WorkflowDefinition) -> Dict[str, Any]:
        """Return outputs of succeeded steps keyed by step name."""
        outputs: Dict[str, Any] = {}
        for entry in self.history:
            if entry.status == StepStatus.SUCCEEDED:
                outputs[definition.steps[entry.step_index].name] = entry.output
        return outputs

    def failed_attempts(self, step_index: int) -> int:
        return sum(
            1
            for entry in self.history
            if entry.step_index == step_index and entry.status == StepStatus.FAILED
        )

    def last_error(self) -> Optional[str]:
        for entry in reversed(self.history):
            if entry.status == StepStatus.FAILED:
                return entry.error
        return None


class CompletionEvent(BaseModel):
    """Argument passed to a completion handler exactly once per run."""

    workflow_id: str
    result: RunResult
    context: Dict[str, Any] = Field(default_factory=dict)


CompletionHandler = Callable[["ShopServices", CompletionEvent], Awaitable[None]]
