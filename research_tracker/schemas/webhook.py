from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from research_tracker.schemas.processor import RunError


class WebhookRunData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    run_id: str | None = None
    status: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: RunError | None = None

    @field_validator("error", mode="before")
    @classmethod
    def coerce_error(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"message": value}
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @property
    def job_id(self) -> str | None:
        raw = self.metadata.get("job_id")
        if isinstance(raw, str) and raw.strip():
            return raw.strip()
        return None


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    timestamp: str | None = None
    data: WebhookRunData = Field(default_factory=WebhookRunData)


class WebhookAck(BaseModel):
    received: bool = True
    action: str | None = None
