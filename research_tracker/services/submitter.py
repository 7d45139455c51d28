from __future__ import annotations

import logging

from opentelemetry import trace

from research_tracker.core.urls import normalize_subject_url
from research_tracker.services.mutator import JobMutator
from research_tracker.services.processor import ProcessorClient, ProcessorDispatchError
from research_tracker.services.repository import (
    JobRecord,
    JobStore,
    RepositoryError,
    RepositoryUnavailableError,
    TransitionResult,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RECORD_RUN_ATTEMPTS = 2


class SubmissionValidationError(ValueError):
    """Raised when a submitted subject url cannot be normalized."""


class TaskSubmitter:
    def __init__(
        self,
        repository: JobStore,
        processor: ProcessorClient,
        *,
        research_prompt: str,
        processor_tier: str = "base",
        webhook_url: str | None = None,
        mutator: JobMutator | None = None,
    ) -> None:
        self.repository = repository
        self.processor = processor
        self.research_prompt = research_prompt
        self.processor_tier = processor_tier
        self.webhook_url = webhook_url
        self.mutator = mutator or JobMutator(repository)

    async def submit(self, raw_url: str) -> JobRecord:
        """Creates a pending job, dispatches it and returns the job in ``processing``.

        Raises ``RepositoryDuplicateError`` when the url is already tracked and
        ``ProcessorDispatchError`` when the processor does not accept the run; in the
        latter case the pending row is removed again so no orphan stays behind.
        """
        try:
            subject_url = normalize_subject_url(raw_url)
        except ValueError as exc:
            raise SubmissionValidationError(str(exc)) from exc

        with tracer.start_as_current_span("submitter.submit") as span:
            span.set_attribute("job.subject_url", subject_url)
            job = await self.repository.create_job(subject_url)
            span.set_attribute("job.id", job.id)

            try:
                run_id = await self.processor.create_run(
                    task_input=self.build_task_input(subject_url),
                    processor=self.processor_tier,
                    metadata={"job_id": job.id},
                    webhook_url=self.webhook_url,
                )
            except ProcessorDispatchError:
                logger.exception("dispatch failed job_id=%s url=%s", job.id, subject_url)
                await self._discard_pending(job)
                raise

            span.set_attribute("run.id", run_id)
            result = await self._record_run(job, run_id)
            logger.info("job submitted job_id=%s run_id=%s state=%s", job.id, run_id, result.job.state)
            return result.job

    async def _record_run(self, job: JobRecord, run_id: str) -> TransitionResult:
        # a processor run exists from here on; losing run_id strands it
        for attempt in range(1, RECORD_RUN_ATTEMPTS + 1):
            try:
                return await self.mutator.mark_processing(job.id, run_id)
            except RepositoryUnavailableError:
                if attempt < RECORD_RUN_ATTEMPTS:
                    logger.warning("recording run id failed job_id=%s run_id=%s attempt=%s", job.id, run_id, attempt)
                    continue
                _log_unrecorded_run(job, run_id)
                raise
            except RepositoryError:
                _log_unrecorded_run(job, run_id)
                raise
        raise AssertionError("unreachable")

    def build_task_input(self, subject_url: str) -> str:
        return f"Research this company: {subject_url}\n\n{self.research_prompt}"

    async def _discard_pending(self, job: JobRecord) -> None:
        try:
            await self.repository.delete_job(job.id)
        except RepositoryError:
            logger.exception("could not discard pending job job_id=%s; orphan cleanup will remove it", job.id)


def _log_unrecorded_run(job: JobRecord, run_id: str) -> None:
    logger.error(
        "dispatched run not recorded job_id=%s run_id=%s url=%s; recover it before orphan cleanup deletes the job",
        job.id,
        run_id,
        job.subject_url,
    )
