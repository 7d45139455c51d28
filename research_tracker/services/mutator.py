from __future__ import annotations

import logging
from typing import Any

from research_tracker.schemas.processor import DEFAULT_FAILURE_REASON
from research_tracker.services.analyzer import FitAnalysis
from research_tracker.services.repository import (
    JobStore,
    JobTransition,
    RepositoryValidationError,
    TransitionResult,
)

logger = logging.getLogger(__name__)

MAX_FAILURE_REASON_LENGTH = 2000


class JobMutator:
    """Sole writer of lifecycle fields.

    Every transition is validated here and handed to the store as one conditional
    write. Terminal jobs are never touched again: a second completion or failure
    (webhook and reconciler racing on the same run) returns ``applied=False``.
    """

    def __init__(self, repository: JobStore) -> None:
        self.repository = repository

    async def mark_processing(self, job_id: str, run_id: str) -> TransitionResult:
        transition = JobTransition(to_state="processing", run_id=_require_run_id(run_id))
        return await self._apply(job_id, transition)

    async def complete(
        self,
        job_id: str,
        *,
        run_id: str,
        result_payload: dict[str, Any],
        analysis: FitAnalysis | None = None,
    ) -> TransitionResult:
        if not isinstance(result_payload, dict):
            raise RepositoryValidationError("result_payload must be a JSON object")
        transition = JobTransition(
            to_state="completed",
            run_id=_require_run_id(run_id),
            result_payload=result_payload,
            derived_score=analysis.score if analysis else None,
            derived_narrative=analysis.narrative if analysis else None,
            derived_attribute=analysis.attribute if analysis else None,
        )
        return await self._apply(job_id, transition)

    async def fail(self, job_id: str, *, run_id: str, reason: str | None) -> TransitionResult:
        normalized_reason = (reason or "").strip() or DEFAULT_FAILURE_REASON
        transition = JobTransition(
            to_state="failed",
            run_id=_require_run_id(run_id),
            failure_reason=normalized_reason[:MAX_FAILURE_REASON_LENGTH],
        )
        return await self._apply(job_id, transition)

    async def _apply(self, job_id: str, transition: JobTransition) -> TransitionResult:
        result = await self.repository.apply_transition(job_id, transition)
        if result.applied:
            logger.info(
                "job transition applied job_id=%s from=%s to=%s run_id=%s",
                job_id,
                result.previous_state,
                transition.to_state,
                result.job.external_run_id,
            )
        else:
            logger.info(
                "job transition skipped job_id=%s state=%s requested=%s",
                job_id,
                result.job.state,
                transition.to_state,
            )
        return result


def _require_run_id(run_id: str | None) -> str:
    if not isinstance(run_id, str) or not run_id.strip():
        raise RepositoryValidationError("run_id must be a non-empty string")
    return run_id.strip()
