from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from research_tracker.services.repository import (
    JobRecord,
    JobTransition,
    RepositoryDuplicateError,
    RepositoryNotFoundError,
    TransitionResult,
)


class InMemoryRepository:
    """Process-local job store for development and tests; mirrors the Postgres store's semantics."""

    def __init__(self) -> None:
        self.jobs: dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    async def close(self) -> None:
        return None

    async def create_job(self, subject_url: str) -> JobRecord:
        with self._lock:
            if any(job.subject_url == subject_url for job in self.jobs.values()):
                raise RepositoryDuplicateError(subject_url)
            now = datetime.now(timezone.utc)
            job = JobRecord(
                id=str(uuid4()),
                subject_url=subject_url,
                state="pending",
                created_at=now,
                updated_at=now,
            )
            self.jobs[job.id] = job
            return _snapshot(job)

    async def get_job(self, job_id: str) -> JobRecord:
        job = self.jobs.get(_normalize_id(job_id))
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return _snapshot(job)

    async def list_jobs(
        self,
        *,
        states: set[str] | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[JobRecord]:
        rows = [
            job
            for job in self.jobs.values()
            if (not states or job.state in states)
            and (created_from is None or job.created_at >= created_from)
            and (created_to is None or job.created_at <= created_to)
        ]
        rows.sort(key=lambda job: job.id)
        rows.sort(key=lambda job: job.created_at, reverse=True)
        start = max(0, offset)
        end = start + limit if limit is not None else None
        return [_snapshot(job) for job in rows[start:end]]

    async def list_processing_jobs(
        self,
        limit: int,
        after: tuple[datetime, str] | None = None,
    ) -> list[JobRecord]:
        rows = sorted(
            (
                job
                for job in self.jobs.values()
                if job.state == "processing" and (after is None or (job.updated_at, job.id) > after)
            ),
            key=lambda job: (job.updated_at, job.id),
        )
        return [_snapshot(job) for job in rows[: max(1, limit)]]

    async def delete_job(self, job_id: str) -> bool:
        with self._lock:
            return self.jobs.pop(_normalize_id(job_id), None) is not None

    async def delete_orphan_pending_jobs(self, older_than: datetime) -> list[str]:
        with self._lock:
            orphan_ids = [
                job.id
                for job in self.jobs.values()
                if job.state == "pending" and job.external_run_id is None and job.created_at < older_than
            ]
            for job_id in orphan_ids:
                del self.jobs[job_id]
            return orphan_ids

    async def apply_transition(self, job_id: str, transition: JobTransition) -> TransitionResult:
        with self._lock:
            current = self.jobs.get(_normalize_id(job_id))
            if current is None:
                raise RepositoryNotFoundError("job not found")
            previous_state = current.state
            if previous_state not in transition.allowed_from:
                return TransitionResult(applied=False, job=_snapshot(current), previous_state=previous_state)

            updated = replace(
                current,
                state=transition.to_state,
                external_run_id=current.external_run_id or transition.run_id,
                result_payload=copy.deepcopy(transition.result_payload),
                derived_score=transition.derived_score,
                derived_narrative=transition.derived_narrative,
                derived_attribute=transition.derived_attribute,
                failure_reason=transition.failure_reason,
                updated_at=_next_timestamp(current.updated_at),
            )
            self.jobs[updated.id] = updated
            return TransitionResult(applied=True, job=_snapshot(updated), previous_state=previous_state)


def _normalize_id(job_id: str) -> str:
    try:
        return str(UUID(job_id))
    except (TypeError, ValueError):
        return job_id


def _snapshot(job: JobRecord) -> JobRecord:
    return replace(job, result_payload=copy.deepcopy(job.result_payload))


def _next_timestamp(previous: datetime) -> datetime:
    now = datetime.now(timezone.utc)
    return now if now > previous else previous + timedelta(microseconds=1)
