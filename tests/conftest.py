from __future__ import annotations

import asyncio
import json
import os
import re
from typing import Any

os.environ.setdefault("RT_OTEL_ENABLED", "false")

import httpx
import pytest
from fastapi.testclient import TestClient

from research_tracker.core.config import Settings
from research_tracker.core.security import compute_webhook_signature
from research_tracker.main import create_app
from research_tracker.services.analyzer import FitAnalyzer
from research_tracker.services.processor import ProcessorClient
from research_tracker.services.store import InMemoryRepository

WEBHOOK_SECRET = "test-webhook-secret"
PROCESSOR_BASE_URL = "https://processor.test"
ANALYZER_BASE_URL = "https://llm.test/v1"

_RUN_PATH = re.compile(r"^/v1/tasks/runs/(?P<run_id>[^/]+)(?P<result>/result)?$")


class FakeProcessor:
    """In-process stand-in for the research processor's task run API."""

    def __init__(self) -> None:
        self.runs: dict[str, dict[str, Any]] = {}
        self.outputs: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.reject_dispatch = False
        self.broken_runs: set[str] = set()
        self.slow_runs: set[str] = set()
        self.result_fetches = 0
        self.status_delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> ProcessorClient:
        return ProcessorClient(PROCESSOR_BASE_URL, "processor-key", timeout_seconds=5, transport=self.transport)

    def complete(self, run_id: str, content: dict[str, Any]) -> dict[str, Any]:
        self.runs[run_id].update(status="completed", is_active=False)
        self.outputs[run_id] = {"type": "json", "content": content, "basis": []}
        return self.outputs[run_id]

    def fail(self, run_id: str, message: str | None = None) -> None:
        self.runs[run_id].update(status="failed", is_active=False)
        if message is not None:
            self.runs[run_id]["error"] = {"message": message, "ref_id": "err_1"}

    def seed_run(self, run_id: str, status: str = "running") -> None:
        self.runs[run_id] = {"run_id": run_id, "status": status, "is_active": status == "running", "metadata": {}}

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path == "/v1/tasks/runs":
            if self.reject_dispatch:
                return httpx.Response(500, json={"error": "processor down"})
            payload = json.loads(request.content)
            run_id = f"trun_{len(self.created) + 1}"
            self.created.append(payload)
            self.runs[run_id] = {
                "run_id": run_id,
                "status": "queued",
                "is_active": True,
                "metadata": payload.get("metadata", {}),
            }
            return httpx.Response(202, json={"run_id": run_id, "status": "queued"})

        match = _RUN_PATH.match(path)
        if request.method != "GET" or match is None:
            return httpx.Response(404, json={"error": "not found"})

        run_id = match.group("run_id")
        if run_id in self.slow_runs:
            await asyncio.sleep(5)
        if run_id in self.broken_runs:
            return httpx.Response(503, json={"error": "unavailable"})
        if run_id not in self.runs:
            return httpx.Response(404, json={"error": "unknown run"})
        if match.group("result"):
            self.result_fetches += 1
            if run_id not in self.outputs:
                return httpx.Response(404, json={"error": "result not ready"})
            return httpx.Response(200, json={"run": self.runs[run_id], "output": self.outputs[run_id]})
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.status_delay)
        finally:
            self.in_flight -= 1
        return httpx.Response(200, json=self.runs[run_id])


class FakeLanguageModel:
    """Chat-completions endpoint returning a canned assistant message."""

    def __init__(self) -> None:
        self.reply: str = json.dumps({"score": 8, "narrative": "Strong fit for custom training.", "attribute": "50-100"})
        self.status_code = 200
        self.calls: list[dict[str, Any]] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def analyzer(self, api_key: str | None = "sk-test") -> FitAnalyzer:
        return FitAnalyzer(api_key, base_url=ANALYZER_BASE_URL, model="test-model", transport=self.transport)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(json.loads(request.content))
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": {"message": "boom"}})
        return httpx.Response(200, json={"choices": [{"index": 0, "message": {"role": "assistant", "content": self.reply}}]})


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "environment": "test",
        "database_url": None,
        "webhook_url": "https://tracker.test/webhook",
        "webhook_secret": WEBHOOK_SECRET,
        "otel_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


def signed_headers(
    body: bytes,
    *,
    secret: str = WEBHOOK_SECRET,
    delivery_id: str = "whk_1",
    timestamp: str = "1735689600",
) -> dict[str, str]:
    signature = compute_webhook_signature(body, delivery_id, timestamp, secret)
    return {
        "webhook-id": delivery_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": f"v1,{signature}",
        "content-type": "application/json",
    }


def status_event(job_id: str, run_id: str, status: str, **data: Any) -> bytes:
    event = {
        "type": "task_run.status",
        "timestamp": "2025-01-01T00:00:00Z",
        "data": {"run_id": run_id, "status": status, "metadata": {"job_id": job_id}, **data},
    }
    return json.dumps(event).encode("utf-8")


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def language_model() -> FakeLanguageModel:
    return FakeLanguageModel()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def client(
    settings: Settings,
    repository: InMemoryRepository,
    processor: FakeProcessor,
    language_model: FakeLanguageModel,
) -> TestClient:
    app = create_app(
        settings,
        repository=repository,
        processor=processor.client(),
        analyzer=language_model.analyzer(),
    )
    with TestClient(app) as test_client:
        yield test_client
