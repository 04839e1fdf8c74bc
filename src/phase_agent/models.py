# models.py
# Data contracts for the phase agent.
# No orchestration logic lives here. Schema, validation and the task
# status machine only.

import itertools
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

TaskStatus = Literal["pending", "thinking", "planning", "executing", "completed", "failed"]
StepStatus = Literal["success", "error", "skipped"]

ToolExecutor = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

NO_TOOL = "none"

# Forward order of a healthy task. "failed" is reachable from any non-terminal state.
_STATUS_ORDER: list[str] = ["pending", "thinking", "planning", "executing", "completed"]
_TERMINAL: frozenset[str] = frozenset({"completed", "failed"})

_task_counter = itertools.count(1)


class InvalidTransitionError(Exception):
    """Raised when a task status change would move backwards or leave a terminal state."""


def _next_task_id() -> str:
    return f"{time.time_ns() // 1_000_000}-{next(_task_counter)}"


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolParameter(BaseModel):
    """Schema entry for one tool argument."""

    model_config = ConfigDict(frozen=True)

    type: str
    description: str
    default: Any = None


class Tool(BaseModel):
    """A registered tool. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique registry key.")
    description: str
    parameters: dict[str, ToolParameter] = Field(default_factory=dict)
    executor: ToolExecutor = Field(..., exclude=True)

    def with_defaults(self, params: dict[str, Any]) -> dict[str, Any]:
        """Fill in declared defaults for any parameter the caller left out."""
        merged: dict[str, Any] = {}
        for key, spec in self.parameters.items():
            if "default" in spec.model_fields_set:
                merged[key] = spec.default
        merged.update(params)
        return merged

    async def run(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self.executor(self.with_defaults(params))


# ---------------------------------------------------------------------------
# Plans and execution
# ---------------------------------------------------------------------------


class PlanStep(BaseModel):
    """A single planned action."""

    step_number: int
    description: str = ""
    tool: str = NO_TOOL
    parameters: dict[str, Any] = Field(default_factory=dict)
    expected_outcome: str = ""

    # Models often emit null for a no-tool step.
    @field_validator("tool", mode="before")
    @classmethod
    def _null_tool(cls, value: Any) -> Any:
        return NO_TOOL if value is None else value

    @field_validator("parameters", mode="before")
    @classmethod
    def _null_parameters(cls, value: Any) -> Any:
        return {} if value is None else value


class Plan(BaseModel):
    """Execution plan produced by the planning phase."""

    steps: list[PlanStep]
    fallback_plan: str = ""
    success_criteria: str = ""

    @classmethod
    def default(cls) -> "Plan":
        """The single no-tool plan used whenever the model's plan is unusable."""
        return cls(
            steps=[
                PlanStep(
                    step_number=1,
                    description="Provide helpful response based on available information",
                    tool=NO_TOOL,
                    parameters={},
                    expected_outcome="User receives helpful information",
                )
            ],
            fallback_plan="Provide general assistance without tools",
            success_criteria="User question is addressed",
        )


class StepResult(BaseModel):
    """Outcome of one plan step during the execute phase."""

    status: StepStatus
    tool: str | None = None
    parameters: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    reason: str | None = None


ExecutionResult = dict[str, StepResult]


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class Task(BaseModel):
    """One user request as seen by the task list. Copy-on-write."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_next_task_id)
    description: str
    status: TaskStatus = "pending"
    created_at: datetime = Field(default_factory=datetime.now)
    result: dict[str, Any] = Field(default_factory=dict)
    steps: list[str] = Field(default_factory=list)
    error: str | None = None

    def advance(self, status: TaskStatus, **changes: Any) -> "Task":
        """
        Return a copy moved to ``status``.

        Only the next status in the forward chain, or ``failed`` from a
        non-terminal state, is accepted.
        """
        if self.status in _TERMINAL:
            raise InvalidTransitionError(f"Task {self.id} is already {self.status}.")
        if status != "failed":
            current = _STATUS_ORDER.index(self.status)
            if _STATUS_ORDER.index(status) != current + 1:
                raise InvalidTransitionError(
                    f"Task {self.id} cannot move from {self.status} to {status}."
                )
        return self.model_copy(update={"status": status, **changes})


# ---------------------------------------------------------------------------
# Observable state and replies
# ---------------------------------------------------------------------------


class ProgressSnapshot(BaseModel):
    """Read-only view of the progress state handed to observers."""

    model_config = ConfigDict(frozen=True)

    agent_mode: bool = False
    is_processing: bool = False
    current_phase: str = ""
    current_step: str = ""
    steps: tuple[str, ...] = ()
    results: dict[str, Any] = Field(default_factory=dict)
    tasks: tuple[Task, ...] = ()


class AgentTrace(BaseModel):
    """Structured trace attached to a reply."""

    steps: list[str]
    results: dict[str, Any]
    phase_completed: list[str]
    error_recovered: bool = False


class AgentReply(BaseModel):
    """What ``Orchestrator.process`` hands back to the caller."""

    text: str
    trace: AgentTrace | None = None
