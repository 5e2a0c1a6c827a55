# models.py
# Data contracts for the plan-execution engine.
# No business logic lives here. Pure schema and validation.

import time
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Tool descriptors
# ---------------------------------------------------------------------------


class ToolSchema(BaseModel):
    """Canonical parameter schema. Always an object schema."""

    type: Literal["object"] = "object"
    properties: dict[str, dict[str, Any]] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class BuiltInSource(BaseModel):
    kind: Literal["built-in"] = "built-in"


class RemoteSource(BaseModel):
    kind: Literal["remote"] = "remote"
    server_id: str


ToolSource = Annotated[Union[BuiltInSource, RemoteSource], Field(discriminator="kind")]


class ToolDescriptor(BaseModel):
    """A tool as exposed by the registry after schema normalization."""

    name: str
    description: str = ""
    input_schema: ToolSchema = Field(default_factory=ToolSchema)
    output_schema: dict[str, Any] | None = None
    source: ToolSource = Field(default_factory=BuiltInSource)
    category: str | None = None

    @property
    def server_id(self) -> str | None:
        return self.source.server_id if isinstance(self.source, RemoteSource) else None

    @property
    def is_remote(self) -> bool:
        return isinstance(self.source, RemoteSource)


class DispatchResult(BaseModel):
    """Uniform outcome of ToolRegistry.execute(). Never raised, always returned."""

    success: bool
    tool_name: str
    result: Any = None
    error: str | None = None
    execution_time_ms: float = 0.0
    source: str | None = None


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanStep(BaseModel):
    """A single planned tool invocation."""

    model_config = ConfigDict(frozen=True)

    step_id: str = Field(..., description="Unique within a plan.")
    tool: str = Field(..., description="Tool name, resolved against the registry.")
    input: dict[str, Any] | str = Field(default_factory=dict, description="Untyped argument blob.")
    reason: str | None = Field(default=None, description="Planner's intent for this step.")
    dependencies: frozenset[str] = Field(
        default_factory=frozenset,
        description="step_ids this step consumes. Carried unchanged across every replacement.",
    )

    @field_validator("step_id", mode="before")
    @classmethod
    def _coerce_step_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("input", mode="before")
    @classmethod
    def _coerce_input(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> Any:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            return frozenset([value])
        return frozenset(str(v) for v in value)


class ValidationIssue(BaseModel):
    step_id: str
    tool_name: str
    issue: str
    suggestion: str


class Correction(BaseModel):
    """Sparse patch for one step's input. Keys absent here are left untouched."""

    step_id: str
    corrected_input: dict[str, Any]

    @field_validator("step_id", mode="before")
    @classmethod
    def _coerce_step_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class ValidationReport(BaseModel):
    is_valid: bool
    steps: list[PlanStep]
    issues: list[ValidationIssue] = Field(default_factory=list)
    remaining_issues: list[ValidationIssue] = Field(default_factory=list)
    corrected: bool = False
    fixed_count: int = 0
    error: str | None = None


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionResult(BaseModel):
    """Immutable ledger entry. One per executed attempt; retries append new entries."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    tool_name: str
    tool_args: dict[str, Any] = Field(default_factory=dict)
    tool_result: Any = None
    tool_error: str | None = None
    observation: str | None = None
    timestamp: float = Field(default_factory=time.time)
    step_index: int
    attempt: int = 1

    @property
    def success(self) -> bool:
        return self.tool_error is None


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class StepReport(BaseModel):
    """Final state of one plan step after the executor is done with it."""

    step: PlanStep
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: str | None = None
    strategies: list[str] = Field(default_factory=list)


class PlanRunReport(BaseModel):
    """Everything one plan run produced: validation outcome, per-step reports, ledger entries."""

    validation: ValidationReport | None = None
    steps: list[StepReport] = Field(default_factory=list)
    entries: list[ExecutionResult] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return bool(self.steps) and all(r.status == StepStatus.COMPLETED for r in self.steps)

    def by_status(self, status: StepStatus) -> list[StepReport]:
        return [r for r in self.steps if r.status == status]
