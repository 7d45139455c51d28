from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

TASK_RUN_STATUS_EVENT = "task_run.status"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"
RUN_STATUS_CANCELLED = "cancelled"
DEFAULT_FAILURE_REASON = "Task failed"
DEFAULT_CANCELLED_REASON = "Task cancelled"


class RunError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str | None = None
    ref_id: str | None = None


class TaskRun(BaseModel):
    """Status view of a processor run, as returned by the status endpoint."""

    model_config = ConfigDict(extra="ignore")

    run_id: str
    status: str
    is_active: bool | None = None
    error: RunError | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("error", mode="before")
    @classmethod
    def coerce_error(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"message": value}
        return value

    @field_validator("status")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return value.strip().lower()


class TaskRunOutput(BaseModel):
    """Versioned result document; ``content`` is the research payload itself."""

    model_config = ConfigDict(extra="allow")

    type: str = "json"
    content: dict[str, Any] | str | None = None
    basis: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def executive_summary(self) -> str | None:
        return executive_summary_of(self.model_dump())


class TaskRunResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    run: TaskRun
    output: TaskRunOutput


class CreateRunResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    run_id: str = Field(min_length=1)
    status: str | None = None


def executive_summary_of(payload: dict[str, Any] | None) -> str | None:
    """Reads ``content.executive_summary`` (or a top-level one) from a stored result payload."""
    if not isinstance(payload, dict):
        return None
    content = payload.get("content")
    summary = content.get("executive_summary") if isinstance(content, dict) else None
    if summary is None:
        summary = payload.get("executive_summary")
    if summary is None:
        return None
    return str(summary)
