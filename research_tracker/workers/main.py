from __future__ import annotations

import asyncio
import logging
import random

from research_tracker.core.config import Settings, get_settings
from research_tracker.core.telemetry import (
    configure_logging,
    setup_worker_telemetry,
    shutdown_telemetry,
)
from research_tracker.services.analyzer import build_analyzer
from research_tracker.services.lifecycle import JobLifecycle
from research_tracker.services.processor import build_processor_client
from research_tracker.services.repository import JobStore, build_repository
from research_tracker.workers.reconciler import Reconciler

logger = logging.getLogger(__name__)


def build_reconciler(settings: Settings, repository: JobStore) -> Reconciler:
    processor = build_processor_client(settings)
    lifecycle = JobLifecycle(repository, processor, build_analyzer(settings))
    return Reconciler(
        repository,
        processor,
        lifecycle,
        max_concurrency=settings.reconcile_max_concurrency,
        job_timeout_seconds=settings.reconcile_job_timeout_seconds,
        batch_size=settings.reconcile_batch_size,
        orphan_pending_after_seconds=settings.orphan_pending_after_seconds,
    )


async def run_reconciler() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_worker_telemetry(settings)
    repository = build_repository(settings)
    reconciler = build_reconciler(settings, repository)

    backoff = settings.reconcile_interval_seconds
    logger.info(
        "reconciler started interval_s=%.1f max_concurrency=%s",
        settings.reconcile_interval_seconds,
        settings.reconcile_max_concurrency,
    )
    try:
        while True:
            try:
                await reconciler.sweep()
                backoff = settings.reconcile_interval_seconds
                await asyncio.sleep(settings.reconcile_interval_seconds)
            except Exception as exc:  # pragma: no cover - worker robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("reconcile sweep failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_reconciler())


if __name__ == "__main__":
    main()
