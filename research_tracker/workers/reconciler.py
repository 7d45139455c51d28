from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from opentelemetry import trace

from research_tracker.services.lifecycle import JobLifecycle, LifecycleOutcome
from research_tracker.services.processor import ProcessorClient, ProcessorError
from research_tracker.services.repository import JobRecord, JobStore, RepositoryError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class SweepSummary:
    examined: int = 0
    completed: int = 0
    failed: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0
    orphans_removed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def needs_reconciliation(job: JobRecord) -> bool:
    return job.state == "processing" and bool(job.external_run_id)


def orphan_cutoff(threshold_seconds: int, now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now - timedelta(seconds=threshold_seconds)


class Reconciler:
    """Pull-based backstop that re-derives job state straight from the processor.

    Each sweep looks at every ``processing`` job, asks the processor for the run's
    status and feeds it through the same :class:`JobLifecycle` the webhook uses.
    Jobs are reconciled independently: one slow or failing run never stops the rest.
    """

    def __init__(
        self,
        repository: JobStore,
        processor: ProcessorClient,
        lifecycle: JobLifecycle,
        *,
        max_concurrency: int = 4,
        job_timeout_seconds: float = 120.0,
        batch_size: int = 500,
        orphan_pending_after_seconds: int = 900,
    ) -> None:
        self.repository = repository
        self.processor = processor
        self.lifecycle = lifecycle
        self.max_concurrency = max(1, max_concurrency)
        self.job_timeout_seconds = job_timeout_seconds
        self.batch_size = max(1, batch_size)
        self.orphan_pending_after_seconds = orphan_pending_after_seconds

    async def sweep(self, now: datetime | None = None) -> SweepSummary:
        with tracer.start_as_current_span("reconciler.sweep") as span:
            summary = SweepSummary()
            summary.orphans_removed = await self.remove_orphans(now=now)

            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def run_one(job: JobRecord) -> str:
                async with semaphore:
                    return await self._reconcile_isolated(job)

            cursor: tuple[datetime, str] | None = None
            while True:
                page = await self.repository.list_processing_jobs(limit=self.batch_size, after=cursor)
                candidates = [job for job in page if needs_reconciliation(job)]
                actions = await asyncio.gather(*(run_one(job) for job in candidates))
                for action in actions:
                    _count(summary, action)
                if len(page) < self.batch_size:
                    break
                cursor = (page[-1].updated_at, page[-1].id)

            for key, value in summary.as_dict().items():
                span.set_attribute(f"sweep.{key}", value)
            logger.info("reconcile sweep finished %s", " ".join(f"{k}={v}" for k, v in summary.as_dict().items()))
            return summary

    async def reconcile_job(self, job: JobRecord) -> LifecycleOutcome:
        with tracer.start_as_current_span("reconciler.reconcile_job") as span:
            span.set_attribute("job.id", job.id)
            run_id = job.external_run_id or ""
            run = await self.processor.get_run(run_id)
            span.set_attribute("run.status", run.status)
            logger.info("reconcile job_id=%s run_id=%s processor_status=%s", job.id, run_id, run.status)
            return await self.lifecycle.apply_run_status(
                job_id=job.id,
                run_id=run_id,
                status=run.status,
                error_message=run.error.message if run.error else None,
            )

    async def remove_orphans(self, now: datetime | None = None) -> int:
        if self.orphan_pending_after_seconds <= 0:
            return 0
        removed = await self.repository.delete_orphan_pending_jobs(
            orphan_cutoff(self.orphan_pending_after_seconds, now=now)
        )
        for job_id in removed:
            logger.warning("removed orphan pending job without run id job_id=%s", job_id)
        return len(removed)

    async def _reconcile_isolated(self, job: JobRecord) -> str:
        try:
            outcome = await asyncio.wait_for(self.reconcile_job(job), timeout=self.job_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("reconcile timed out job_id=%s after %.1fs", job.id, self.job_timeout_seconds)
            return "error"
        except (ProcessorError, RepositoryError) as exc:
            logger.warning("reconcile failed job_id=%s error=%s", job.id, exc)
            return "error"
        except Exception:  # pragma: no cover - per-job isolation
            logger.exception("reconcile crashed job_id=%s", job.id)
            return "error"
        return outcome.action


def _count(summary: SweepSummary, action: str) -> None:
    summary.examined += 1
    if action == "completed":
        summary.completed += 1
    elif action == "failed":
        summary.failed += 1
    elif action == "unchanged":
        summary.unchanged += 1
    elif action == "error":
        summary.errors += 1
    else:
        summary.skipped += 1
