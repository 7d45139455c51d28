from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from research_tracker.schemas.processor import (
    DEFAULT_CANCELLED_REASON,
    DEFAULT_FAILURE_REASON,
    RUN_STATUS_CANCELLED,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
)
from research_tracker.services.analyzer import EnrichmentError, FitAnalysis, FitAnalyzer
from research_tracker.services.mutator import JobMutator
from research_tracker.services.processor import ProcessorClient
from research_tracker.services.repository import JobRecord, JobStore, RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class LifecycleOutcome:
    action: str
    job: JobRecord | None = None

    @property
    def finalized(self) -> bool:
        return self.action in {"completed", "failed"}


class JobLifecycle:
    """Finalization logic shared by the webhook route and the reconciler.

    Both paths hand the processor's view of a run to :meth:`apply_run_status`, so a
    job reaches the same terminal record whichever path observes the outcome first.
    """

    def __init__(
        self,
        repository: JobStore,
        processor: ProcessorClient,
        analyzer: FitAnalyzer,
        mutator: JobMutator | None = None,
    ) -> None:
        self.repository = repository
        self.processor = processor
        self.analyzer = analyzer
        self.mutator = mutator or JobMutator(repository)

    async def apply_run_status(
        self,
        *,
        job_id: str,
        run_id: str,
        status: str,
        error_message: str | None = None,
    ) -> LifecycleOutcome:
        normalized_status = (status or "").strip().lower()
        with tracer.start_as_current_span("lifecycle.apply_run_status") as span:
            span.set_attribute("job.id", job_id)
            span.set_attribute("run.id", run_id)
            span.set_attribute("run.status", normalized_status)

            try:
                job = await self.repository.get_job(job_id)
            except RepositoryNotFoundError:
                logger.warning("run status for unknown job job_id=%s run_id=%s", job_id, run_id)
                return LifecycleOutcome(action="unknown_job")

            if job.external_run_id and job.external_run_id != run_id:
                logger.warning(
                    "run id mismatch job_id=%s recorded_run_id=%s notified_run_id=%s",
                    job_id,
                    job.external_run_id,
                    run_id,
                )
                return LifecycleOutcome(action="run_mismatch", job=job)
            if job.is_terminal:
                return LifecycleOutcome(action="already_terminal", job=job)

            if normalized_status == RUN_STATUS_COMPLETED:
                return await self._complete(job, run_id)
            if normalized_status in {RUN_STATUS_FAILED, RUN_STATUS_CANCELLED}:
                default_reason = DEFAULT_CANCELLED_REASON if normalized_status == RUN_STATUS_CANCELLED else DEFAULT_FAILURE_REASON
                result = await self.mutator.fail(job.id, run_id=run_id, reason=error_message or default_reason)
                return LifecycleOutcome(action="failed" if result.applied else "already_terminal", job=result.job)

            return LifecycleOutcome(action="unchanged", job=job)

    async def _complete(self, job: JobRecord, run_id: str) -> LifecycleOutcome:
        # ProcessorFetchError propagates: the job stays processing for the next observer.
        result = await self.processor.get_result(run_id)
        payload = result.output.model_dump(mode="json")
        analysis = await self._analyze(job, payload)
        transition = await self.mutator.complete(
            job.id,
            run_id=run_id,
            result_payload=payload,
            analysis=analysis,
        )
        if transition.applied and analysis is not None:
            logger.info("job enriched job_id=%s score=%s attribute=%s", job.id, analysis.score, analysis.attribute)
        return LifecycleOutcome(action="completed" if transition.applied else "already_terminal", job=transition.job)

    async def _analyze(self, job: JobRecord, payload: dict[str, Any]) -> FitAnalysis | None:
        try:
            return await self.analyzer.analyze(payload)
        except EnrichmentError as exc:
            logger.warning("fit analysis failed job_id=%s error=%s", job.id, exc)
            return None
