from datetime import date
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from research_tracker.core.dependencies import get_repository, get_submitter
from research_tracker.schemas.jobs import ExportSortField, JobDeleted, JobOut, JobState, SortOrder, SubmitRequest
from research_tracker.services.export import (
    ExportFilters,
    collect_export_rows,
    export_filename,
    parse_states,
    render_csv,
)
from research_tracker.services.processor import ProcessorDispatchError
from research_tracker.services.repository import (
    RepositoryDuplicateError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from research_tracker.services.submitter import SubmissionValidationError

router = APIRouter()
logger = logging.getLogger(__name__)

DUPLICATE_URL_MESSAGE = "This company URL has already been added."


@router.post("", response_model=JobOut, status_code=status.HTTP_201_CREATED)
async def submit_company(payload: SubmitRequest, submitter=Depends(get_submitter)) -> JobOut:
    try:
        job = await submitter.submit(payload.url)
    except SubmissionValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryDuplicateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=DUPLICATE_URL_MESSAGE) from exc
    except ProcessorDispatchError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to start research for this company. Please try again.",
        ) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobOut(**job.to_dict())


@router.get("", response_model=list[JobOut])
async def list_companies(
    repository=Depends(get_repository),
    state: JobState | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    try:
        jobs = await repository.list_jobs(states={state} if state else None, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [JobOut(**job.to_dict()) for job in jobs]


@router.get("/export")
async def export_companies(
    repository=Depends(get_repository),
    score_min: int | None = Query(default=None, ge=1, le=10),
    score_max: int | None = Query(default=None, ge=1, le=10),
    state: str | None = Query(default=None, description="comma-separated states"),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    attribute_min: int | None = Query(default=None, ge=0),
    attribute_max: int | None = Query(default=None, ge=0),
    sort_by: ExportSortField = Query(default="created_at"),
    order: SortOrder = Query(default="desc"),
) -> Response:
    try:
        filters = ExportFilters(
            score_min=score_min,
            score_max=score_max,
            states=parse_states(state),
            date_from=date_from,
            date_to=date_to,
            attribute_min=attribute_min,
            attribute_max=attribute_max,
            sort_by=sort_by,
            order=order,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    try:
        jobs = await collect_export_rows(repository, filters)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    logger.info("export generated rows=%s", len(jobs))
    return Response(
        content=render_csv(jobs),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
    )


@router.get("/{job_id}", response_model=JobOut)
async def get_company(job_id: str, repository=Depends(get_repository)) -> JobOut:
    try:
        job = await repository.get_job(job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobOut(**job.to_dict())


@router.delete("/{job_id}", response_model=JobDeleted)
async def delete_company(job_id: str, repository=Depends(get_repository)) -> JobDeleted:
    try:
        deleted = await repository.delete_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    logger.info("job deleted job_id=%s", job_id)
    return JobDeleted(deleted_id=job_id)
