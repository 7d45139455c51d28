from fastapi import APIRouter, Depends, HTTPException, Request, status

from research_tracker.core.dependencies import get_repository
from research_tracker.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request, repository=Depends(get_repository)) -> dict[str, str]:
    try:
        await repository.list_jobs(limit=1)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    verifier = request.app.state.webhook_verifier
    if verifier.secret:
        webhook_mode = "verified"
    elif verifier.require_signature:
        webhook_mode = "rejecting"
    else:
        webhook_mode = "unverified"
    return {"status": "ready", "store": type(repository).__name__, "webhook_verification": webhook_mode}
