from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Iterable

from research_tracker.schemas.processor import executive_summary_of
from research_tracker.services.repository import JOB_STATES, JobRecord, JobStore

EXPORT_COLUMNS = (
    "URL",
    "Status",
    "Fit Score",
    "Employee Count",
    "Pitch",
    "Executive Summary",
    "Created At",
    "Updated At",
)
SORT_FIELDS = {"created_at", "updated_at", "score", "subject_url"}

_OPEN_ENDED = re.compile(r"^(\d+)\+$")
_RANGE = re.compile(r"^(\d+)-(\d+)$")
_SINGLE = re.compile(r"^(\d+)$")


@dataclass(slots=True)
class ExportFilters:
    score_min: int | None = None
    score_max: int | None = None
    states: set[str] = field(default_factory=set)
    date_from: date | None = None
    date_to: date | None = None
    attribute_min: int | None = None
    attribute_max: int | None = None
    sort_by: str = "created_at"
    order: str = "desc"

    def __post_init__(self) -> None:
        unknown = self.states - set(JOB_STATES)
        if unknown:
            raise ValueError(f"unknown states: {sorted(unknown)}")
        if self.sort_by not in SORT_FIELDS:
            raise ValueError(f"sort_by must be one of: {', '.join(sorted(SORT_FIELDS))}")
        if self.order not in {"asc", "desc"}:
            raise ValueError("order must be asc or desc")


def parse_states(raw: str | None) -> set[str]:
    if not raw:
        return set()
    return {chunk.strip().lower() for chunk in raw.split(",") if chunk.strip()}


def parse_attribute_range(raw: str | None) -> tuple[int, int | None] | None:
    """Parses ``"250"``, ``"50-100"`` or ``"10000+"`` into an inclusive (low, high) pair; high ``None`` is unbounded."""
    if raw is None:
        return None
    compact = raw.strip().replace(",", "").replace(" ", "")
    if match := _OPEN_ENDED.match(compact):
        return int(match.group(1)), None
    if match := _RANGE.match(compact):
        low, high = int(match.group(1)), int(match.group(2))
        return (low, high) if low <= high else (high, low)
    if match := _SINGLE.match(compact):
        value = int(match.group(1))
        return value, value
    return None


async def collect_export_rows(repository: JobStore, filters: ExportFilters) -> list[JobRecord]:
    created_from = datetime.combine(filters.date_from, time.min, tzinfo=timezone.utc) if filters.date_from else None
    created_to = datetime.combine(filters.date_to, time.max, tzinfo=timezone.utc) if filters.date_to else None
    jobs = await repository.list_jobs(
        states=filters.states or None,
        created_from=created_from,
        created_to=created_to,
    )
    selected = [job for job in jobs if _matches_score(job, filters) and _matches_attribute(job, filters)]
    return sort_jobs(selected, sort_by=filters.sort_by, order=filters.order)


def sort_jobs(jobs: list[JobRecord], *, sort_by: str, order: str) -> list[JobRecord]:
    reverse = order == "desc"
    if sort_by == "score":
        scored = [job for job in jobs if job.derived_score is not None]
        unscored = [job for job in jobs if job.derived_score is None]
        scored.sort(key=lambda job: job.derived_score, reverse=reverse)
        return scored + unscored
    return sorted(jobs, key=lambda job: getattr(job, sort_by), reverse=reverse)


def render_csv(jobs: Iterable[JobRecord]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for job in jobs:
        writer.writerow(
            [
                job.subject_url,
                job.state,
                f"{job.derived_score}/10" if job.derived_score is not None else "",
                job.derived_attribute or "",
                job.derived_narrative or "",
                executive_summary_of(job.result_payload) or "",
                job.created_at.isoformat(),
                job.updated_at.isoformat(),
            ]
        )
    return buffer.getvalue()


def export_filename(now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    return f"companies_export_{current.strftime('%Y-%m-%dT%H-%M-%S')}.csv"


def _matches_score(job: JobRecord, filters: ExportFilters) -> bool:
    if filters.score_min is None and filters.score_max is None:
        return True
    if job.derived_score is None:
        return False
    if filters.score_min is not None and job.derived_score < filters.score_min:
        return False
    if filters.score_max is not None and job.derived_score > filters.score_max:
        return False
    return True


def _matches_attribute(job: JobRecord, filters: ExportFilters) -> bool:
    if filters.attribute_min is None and filters.attribute_max is None:
        return True
    bounds = parse_attribute_range(job.derived_attribute)
    if bounds is None:
        return False
    low, high = bounds
    if filters.attribute_min is not None and high is not None and high < filters.attribute_min:
        return False
    if filters.attribute_max is not None and low > filters.attribute_max:
        return False
    return True
