from __future__ import annotations

from typing import Any

import httpx
from pydantic import ValidationError

from research_tracker.core.config import Settings
from research_tracker.schemas.processor import CreateRunResponse, TaskRun, TaskRunResult

WEBHOOK_BETA_HEADER = "webhook-2025-08-12"


class ProcessorError(Exception):
    """Base error for calls to the external research processor."""


class ProcessorDispatchError(ProcessorError):
    """Raised when the processor rejects or cannot be reached for a new run."""


class ProcessorFetchError(ProcessorError):
    """Raised when a run status or result cannot be fetched."""


class ProcessorClient:
    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.headers = {
            "x-api-key": api_key or "",
            "parallel-beta": WEBHOOK_BETA_HEADER,
        }

    async def create_run(
        self,
        *,
        task_input: str,
        processor: str,
        metadata: dict[str, Any],
        webhook_url: str | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "input": task_input,
            "processor": processor,
            "metadata": metadata,
        }
        if webhook_url and webhook_url.startswith("https://"):
            payload["webhook"] = {"url": webhook_url, "event_types": ["task_run.status"]}

        try:
            async with self._client() as client:
                response = await client.post("/v1/tasks/runs", json=payload)
        except httpx.HTTPError as exc:
            raise ProcessorDispatchError(f"processor unreachable: {exc.__class__.__name__}") from exc

        if not response.is_success:
            raise ProcessorDispatchError(f"processor rejected run status={response.status_code} body={response.text[:300]}")
        try:
            return CreateRunResponse.model_validate(response.json()).run_id
        except (ValueError, ValidationError) as exc:
            raise ProcessorDispatchError("processor response did not include a run_id") from exc

    async def get_run(self, run_id: str) -> TaskRun:
        payload = await self._get_json(f"/v1/tasks/runs/{run_id}")
        try:
            return TaskRun.model_validate(payload)
        except ValidationError as exc:
            raise ProcessorFetchError(f"malformed run status for run_id={run_id}") from exc

    async def get_result(self, run_id: str) -> TaskRunResult:
        payload = await self._get_json(f"/v1/tasks/runs/{run_id}/result")
        try:
            return TaskRunResult.model_validate(payload)
        except ValidationError as exc:
            raise ProcessorFetchError(f"malformed run result for run_id={run_id}") from exc

    async def _get_json(self, path: str) -> Any:
        try:
            async with self._client() as client:
                response = await client.get(path)
        except httpx.HTTPError as exc:
            raise ProcessorFetchError(f"processor unreachable: {exc.__class__.__name__}") from exc

        if not response.is_success:
            raise ProcessorFetchError(f"processor request failed path={path} status={response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise ProcessorFetchError(f"processor returned non-JSON body path={path}") from exc

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout_seconds,
            transport=self.transport,
        )


def build_processor_client(settings: Settings) -> ProcessorClient:
    return ProcessorClient(
        base_url=settings.processor_base_url,
        api_key=settings.processor_api_key,
        timeout_seconds=settings.processor_timeout_seconds,
    )
