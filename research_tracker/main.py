from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from research_tracker.api.router import api_router
from research_tracker.core.config import Settings, get_settings
from research_tracker.core.security import WebhookVerifier
from research_tracker.core.telemetry import configure_logging, setup_api_telemetry, shutdown_telemetry
from research_tracker.services.analyzer import FitAnalyzer, build_analyzer
from research_tracker.services.lifecycle import JobLifecycle
from research_tracker.services.mutator import JobMutator
from research_tracker.services.processor import ProcessorClient, build_processor_client
from research_tracker.services.repository import JobStore, build_repository
from research_tracker.services.submitter import TaskSubmitter

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    repository: JobStore | None = None,
    processor: ProcessorClient | None = None,
    analyzer: FitAnalyzer | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    repository = repository if repository is not None else build_repository(settings)
    processor = processor or build_processor_client(settings)
    analyzer = analyzer or build_analyzer(settings)
    mutator = JobMutator(repository)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            shutdown_telemetry(telemetry_runtime)
            await repository.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.repository = repository
    app.state.webhook_verifier = WebhookVerifier.from_settings(settings)
    app.state.submitter = TaskSubmitter(
        repository,
        processor,
        research_prompt=settings.research_prompt,
        processor_tier=settings.processor_tier,
        webhook_url=settings.webhook_url,
        mutator=mutator,
    )
    app.state.lifecycle = JobLifecycle(repository, processor, analyzer, mutator=mutator)
    telemetry_runtime = setup_api_telemetry(app, settings)

    if app.state.webhook_verifier.secret is None and not app.state.webhook_verifier.require_signature:
        logger.warning("UNSAFE: RT_WEBHOOK_SECRET not configured; webhook notifications will not be verified")

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    app.include_router(api_router)
    return app


app = create_app()
