import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError

from research_tracker.core.dependencies import get_lifecycle
from research_tracker.core.security import verify_webhook_request
from research_tracker.schemas.processor import TASK_RUN_STATUS_EVENT
from research_tracker.schemas.webhook import WebhookAck, WebhookEvent
from research_tracker.services.processor import ProcessorFetchError
from research_tracker.services.repository import RepositoryUnavailableError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=WebhookAck)
async def receive_webhook(
    body: bytes = Depends(verify_webhook_request),
    lifecycle=Depends(get_lifecycle),
) -> WebhookAck:
    try:
        event = WebhookEvent.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="malformed webhook payload") from exc

    if event.type != TASK_RUN_STATUS_EVENT:
        logger.info("webhook ignored type=%s", event.type)
        return WebhookAck(action="ignored")

    data = event.data
    job_id = data.job_id
    if not job_id or not data.run_id or not data.status:
        logger.warning(
            "webhook missing correlation fields job_id=%s run_id=%s status=%s",
            job_id,
            data.run_id,
            data.status,
        )
        return WebhookAck(action="ignored")

    logger.info("webhook received job_id=%s run_id=%s status=%s", job_id, data.run_id, data.status)
    try:
        outcome = await lifecycle.apply_run_status(
            job_id=job_id,
            run_id=data.run_id,
            status=data.status,
            error_message=data.error.message if data.error else None,
        )
    except ProcessorFetchError as exc:
        logger.error("webhook result fetch failed job_id=%s run_id=%s error=%s", job_id, data.run_id, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="failed to fetch run result") from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return WebhookAck(action=outcome.action)
