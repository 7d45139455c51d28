from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobState = Literal["pending", "processing", "completed", "failed"]
ExportSortField = Literal["created_at", "updated_at", "score", "subject_url"]
SortOrder = Literal["asc", "desc"]


class JobOut(BaseModel):
    id: str
    subject_url: str
    external_run_id: str | None = None
    state: JobState
    result_payload: dict[str, Any] | None = None
    derived_score: int | None = None
    derived_narrative: str | None = None
    derived_attribute: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class SubmitRequest(BaseModel):
    url: str = Field(min_length=1, max_length=2048)


class JobDeleted(BaseModel):
    deleted_id: str
