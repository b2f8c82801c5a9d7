"""Pydantic schemas for the task-splitting backend payloads.

This module defines the data models exchanged with the REST backend: the
job status snapshot, the paginated layer/task/change hierarchy, and the
plan slices that drive one job each. All models use Pydantic v2; unknown
fields sent by the backend are ignored.
"""

from enum import StrEnum
from typing import Any, ClassVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class JobStatus(StrEnum):
    """Overall task-splitting job status."""

    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CodegenStatus(StrEnum):
    """Status of the code-generation sub-job."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PRStatus(StrEnum):
    """Status of the pull-request creation sub-job."""

    IDLE = "IDLE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TaskStatus(StrEnum):
    """Status shared by layers and tasks."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({"COMPLETED", "FAILED"})


def is_terminal(status: str | None) -> bool:
    """Return True if a status value admits no further transitions."""
    return status is not None and status in TERMINAL_STATUSES


def _normalize_status(v: Any) -> Any:
    # Some backends report lower-case statuses ("completed")
    if isinstance(v, str):
        return v.strip().upper()
    return v


class FileChange(BaseModel):
    """A file change produced by a task."""

    path: str = Field(description="Repository-relative file path")
    lang: str = Field(default="", description="Language hint for rendering")
    content: str = Field(default="", description="Diff or file content")


class TaskTestResult(BaseModel):
    """Outcome of a single generated test."""

    name: str
    status: str = "PENDING"

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        return _normalize_status(v)


class TaskTests(BaseModel):
    """Aggregate test counters for a task."""

    total: int = Field(default=0, ge=0)
    passed: int = Field(default=0, ge=0)


class Task(BaseModel):
    """A unit of generated work within a layer."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    file: str = ""
    status: TaskStatus = TaskStatus.PENDING
    tests: TaskTests = Field(default_factory=TaskTests)
    test_code: str = Field(default="", alias="testCode")
    test_results: list[TaskTestResult] = Field(default_factory=list, alias="testResults")
    changes: list[FileChange] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        return _normalize_status(v)

    @field_validator("changes", "logs", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class Layer(BaseModel):
    """An ordered phase of a job containing tasks."""

    id: str
    title: str = ""
    status: TaskStatus = TaskStatus.PENDING
    layer_order: int = Field(default=0, description="Monotonically increasing order")
    tasks: list[Task] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        return _normalize_status(v)

    @property
    def is_completed(self) -> bool:
        """Completed at layer level, or every task reports completed.

        Some backends roll status up to the layer while others only
        populate task-level status.
        """
        if self.status == TaskStatus.COMPLETED:
            return True
        return bool(self.tasks) and all(
            task.status == TaskStatus.COMPLETED for task in self.tasks
        )


class AgentActivity(BaseModel):
    """A polled record of one agent tool invocation."""

    tool: str = Field(
        default="tool",
        validation_alias=AliasChoices("tool", "tool_name"),
    )
    params: dict[str, Any] | str | None = Field(
        default=None,
        validation_alias=AliasChoices("params", "parameters"),
    )
    phase: int | None = Field(
        default=None,
        validation_alias=AliasChoices("phase", "layer_order"),
        description="Layer order the activity belongs to",
    )
    task: int | str | None = Field(
        default=None,
        validation_alias=AliasChoices("task", "task_index"),
        description="Task coordinate within the layer",
    )
    timestamp: str | float | None = None

    @field_validator("tool", mode="before")
    @classmethod
    def default_tool(cls, v: Any) -> Any:
        return v or "tool"


class JobSnapshot(BaseModel):
    """Status payload of a task-splitting job.

    Only the fields named in ``CHANGE_FIELDS`` participate in change
    detection between consecutive polls.
    """

    CHANGE_FIELDS: ClassVar[tuple[str, ...]] = (
        "status",
        "codegen_status",
        "current_step",
        "pr_status",
        "pr_url",
        "pr_error_message",
        "error_message",
    )

    task_splitting_id: str | None = None
    status: JobStatus | None = None
    codegen_status: CodegenStatus | None = None
    current_step: int | None = None
    pr_status: PRStatus | None = None
    pr_url: str | None = None
    pr_error_message: str | None = None
    error_message: str | None = None
    agent_activity: list[AgentActivity] = Field(default_factory=list)

    @field_validator("status", "codegen_status", "pr_status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        return _normalize_status(v) or None

    @field_validator("agent_activity", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def is_in_progress(self) -> bool:
        """True while either the job or its codegen is running."""
        return (
            self.codegen_status == CodegenStatus.IN_PROGRESS
            or self.status == JobStatus.IN_PROGRESS
        )

    @property
    def polling_finished(self) -> bool:
        """True once the main status poller may stop.

        Holds when both statuses are terminal or codegen status is absent.
        """
        if self.codegen_status is None:
            return True
        return is_terminal(self.status) and is_terminal(self.codegen_status)

    @property
    def pr_polling_finished(self) -> bool:
        """True once a pull request URL is known or PR creation failed."""
        return bool(self.pr_url) or self.pr_status == PRStatus.FAILED

    def differs_from(self, other: "JobSnapshot | None") -> bool:
        """Compare against a previous snapshot on the change-detection fields."""
        if other is None:
            return True
        for name in self.CHANGE_FIELDS:
            if getattr(self, name) != getattr(other, name):
                return True
        return len(self.agent_activity) != len(other.agent_activity)


class LayersPage(BaseModel):
    """One page of the layer hierarchy."""

    task_splitting_id: str | None = None
    layers: list[Layer] = Field(default_factory=list)
    next_layer_order: int | None = None


class SubmitJobRequest(BaseModel):
    """Request body for submitting a task-splitting job."""

    plan_item_id: str
    recipe_id: str | None = None


class SubmitJobResponse(BaseModel):
    """Response for job submission."""

    task_splitting_id: str = Field(description="Identifier of the created job")
    status: str = "SUBMITTED"
    message: str = ""

    @property
    def job_id(self) -> str:
        return self.task_splitting_id


class PlanSlice(BaseModel):
    """A top-level unit of work from an externally supplied plan."""

    item_number: int = Field(description="Ordering key within the plan")
    plan_item_id: str = Field(description="Backend identifier of the plan item")
    title: str = ""
