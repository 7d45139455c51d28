from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from research_tracker.core.config import Settings

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable, not configured, or a write could not be committed."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested job does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates uniqueness or state transition rules."""


class RepositoryDuplicateError(RepositoryConflictError):
    """Raised when a job already exists for the submitted subject url."""

    def __init__(self, subject_url: str) -> None:
        super().__init__(f"a job already exists for {subject_url}")
        self.subject_url = subject_url


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


JOB_STATES = ("pending", "processing", "completed", "failed")
TERMINAL_STATES = frozenset({"completed", "failed"})
ALLOWED_SOURCE_STATES: dict[str, frozenset[str]] = {
    "processing": frozenset({"pending"}),
    "completed": frozenset({"pending", "processing"}),
    "failed": frozenset({"pending", "processing"}),
}


@dataclass(slots=True)
class JobRecord:
    id: str
    subject_url: str
    state: str
    created_at: datetime
    updated_at: datetime
    external_run_id: str | None = None
    result_payload: dict[str, Any] | None = None
    derived_score: int | None = None
    derived_narrative: str | None = None
    derived_attribute: str | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject_url": self.subject_url,
            "external_run_id": self.external_run_id,
            "state": self.state,
            "result_payload": self.result_payload,
            "derived_score": self.derived_score,
            "derived_narrative": self.derived_narrative,
            "derived_attribute": self.derived_attribute,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True, frozen=True)
class JobTransition:
    """A fully-validated field set for one state change; built only by the job mutator."""

    to_state: str
    run_id: str
    result_payload: dict[str, Any] | None = None
    derived_score: int | None = None
    derived_narrative: str | None = None
    derived_attribute: str | None = None
    failure_reason: str | None = None

    @property
    def allowed_from(self) -> frozenset[str]:
        return ALLOWED_SOURCE_STATES[self.to_state]


@dataclass(slots=True)
class TransitionResult:
    applied: bool
    job: JobRecord
    previous_state: str | None = field(default=None)


class JobStore(Protocol):
    async def close(self) -> None: ...

    async def create_job(self, subject_url: str) -> JobRecord: ...

    async def get_job(self, job_id: str) -> JobRecord: ...

    async def list_jobs(
        self,
        *,
        states: set[str] | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[JobRecord]: ...

    async def list_processing_jobs(
        self,
        limit: int,
        after: tuple[datetime, str] | None = None,
    ) -> list[JobRecord]: ...

    async def delete_job(self, job_id: str) -> bool: ...

    async def delete_orphan_pending_jobs(self, older_than: datetime) -> list[str]: ...

    async def apply_transition(self, job_id: str, transition: JobTransition) -> TransitionResult: ...


_JOB_COLUMNS = """
  id::text as id,
  subject_url,
  external_run_id,
  state,
  result_payload,
  derived_score,
  derived_narrative,
  derived_attribute,
  failure_reason,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_job(self, subject_url: str) -> JobRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into research_jobs (subject_url, state)
                values ($1, 'pending')
                returning {_JOB_COLUMNS}
                """,
                subject_url,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryDuplicateError(subject_url) from exc
        except (pg_exc.PostgresConnectionError, OSError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        return self._job_row_to_record(row)

    async def get_job(self, job_id: str) -> JobRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_JOB_COLUMNS} from research_jobs where id = $1::uuid",
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def list_jobs(
        self,
        *,
        states: set[str] | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[JobRecord]:
        pool = await self._get_pool()
        clauses: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if states:
            clauses.append(f"state = any({bind(sorted(states))}::text[])")
        if created_from is not None:
            clauses.append(f"created_at >= {bind(created_from)}")
        if created_to is not None:
            clauses.append(f"created_at <= {bind(created_to)}")

        where_sql = f"where {' and '.join(clauses)}" if clauses else ""
        limit_sql = f"limit {bind(limit)}" if limit is not None else ""
        offset_sql = f"offset {bind(max(0, offset))}"
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from research_jobs
            {where_sql}
            order by created_at desc, id asc
            {limit_sql}
            {offset_sql}
            """,
            *params,
        )
        return [self._job_row_to_record(row) for row in rows]

    async def list_processing_jobs(
        self,
        limit: int,
        after: tuple[datetime, str] | None = None,
    ) -> list[JobRecord]:
        """One keyset page of processing jobs ordered by ``(updated_at, id)``, strictly after ``after``."""
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        if after is None:
            rows = await pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from research_jobs
                where state = 'processing'
                order by updated_at asc, id asc
                limit $1
                """,
                bounded_limit,
            )
        else:
            rows = await pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from research_jobs
                where state = 'processing'
                  and (updated_at, id) > ($2, $3::uuid)
                order by updated_at asc, id asc
                limit $1
                """,
                bounded_limit,
                after[0],
                after[1],
            )
        return [self._job_row_to_record(row) for row in rows]

    async def delete_job(self, job_id: str) -> bool:
        pool = await self._get_pool()
        try:
            deleted = await pool.fetchval(
                "delete from research_jobs where id = $1::uuid returning id::text",
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return False
        return deleted is not None

    async def delete_orphan_pending_jobs(self, older_than: datetime) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            delete from research_jobs
            where state = 'pending'
              and external_run_id is null
              and created_at < $1
            returning id::text as id
            """,
            older_than,
        )
        return [row["id"] for row in rows]

    async def apply_transition(self, job_id: str, transition: JobTransition) -> TransitionResult:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        f"select {_JOB_COLUMNS} from research_jobs where id = $1::uuid for update",
                        job_id,
                    )
                    if not current:
                        raise RepositoryNotFoundError("job not found")
                    previous_state = current["state"]
                    if previous_state not in transition.allowed_from:
                        return TransitionResult(
                            applied=False,
                            job=self._job_row_to_record(current),
                            previous_state=previous_state,
                        )

                    row = await conn.fetchrow(
                        f"""
                        update research_jobs
                        set
                          state = $2,
                          external_run_id = coalesce(external_run_id, $3),
                          result_payload = $4::jsonb,
                          derived_score = $5,
                          derived_narrative = $6,
                          derived_attribute = $7,
                          failure_reason = $8,
                          updated_at = now()
                        where id = $1::uuid
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                        transition.to_state,
                        transition.run_id,
                        json.dumps(transition.result_payload) if transition.result_payload is not None else None,
                        transition.derived_score,
                        transition.derived_narrative,
                        transition.derived_attribute,
                        transition.failure_reason,
                    )
                    return TransitionResult(
                        applied=True,
                        job=self._job_row_to_record(row),
                        previous_state=previous_state,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        except pg_exc.CheckViolationError as exc:
            raise RepositoryConflictError(str(exc)) from exc
        except (pg_exc.PostgresConnectionError, OSError) as exc:
            raise RepositoryUnavailableError("job transition was not committed") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("RT_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_record(row: asyncpg.Record) -> JobRecord:
        result_payload = row["result_payload"]
        if isinstance(result_payload, str):
            try:
                result_payload = json.loads(result_payload)
            except json.JSONDecodeError:
                result_payload = None
        if not isinstance(result_payload, dict):
            result_payload = None

        return JobRecord(
            id=row["id"],
            subject_url=row["subject_url"],
            external_run_id=row["external_run_id"],
            state=row["state"],
            result_payload=result_payload,
            derived_score=row["derived_score"],
            derived_narrative=row["derived_narrative"],
            derived_attribute=row["derived_attribute"],
            failure_reason=row["failure_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def build_repository(settings: Settings) -> JobStore:
    """Constructs the process-wide job store; callers pass the handle to every component."""
    if settings.database_url:
        return PostgresRepository(
            database_url=settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
        )

    from research_tracker.services.store import InMemoryRepository

    logger.warning("RT_DATABASE_URL not set; using in-memory job store, state is lost on restart")
    return InMemoryRepository()
