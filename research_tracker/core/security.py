import base64
import hashlib
import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from research_tracker.core.config import Settings

logger = logging.getLogger(__name__)

WEBHOOK_ID_HEADER = "webhook-id"
WEBHOOK_TIMESTAMP_HEADER = "webhook-timestamp"
WEBHOOK_SIGNATURE_HEADER = "webhook-signature"


class WebhookVerificationError(Exception):
    """Raised when an inbound notification cannot be attributed to the processor."""


def compute_webhook_signature(body: bytes, delivery_id: str, timestamp: str, secret: str) -> str:
    signed_payload = f"{delivery_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(
    body: bytes,
    delivery_id: str,
    timestamp: str,
    signature_header: str,
    secret: str,
) -> bool:
    """True when any space-delimited candidate (``scheme,value`` or bare ``value``) matches."""
    expected = compute_webhook_signature(body, delivery_id, timestamp, secret).encode("ascii")
    matched = False
    for candidate in signature_header.split():
        _, separator, value = candidate.partition(",")
        signature = value if separator else candidate
        # no early exit; every candidate is compared
        if hmac.compare_digest(signature.encode("utf-8"), expected):
            matched = True
    return matched


class WebhookVerifier:
    def __init__(self, secret: str | None, *, require_signature: bool) -> None:
        self.secret = secret
        self.require_signature = require_signature

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebhookVerifier":
        return cls(settings.effective_webhook_secret, require_signature=settings.require_signed_webhooks)

    def verify(
        self,
        body: bytes,
        *,
        delivery_id: str | None,
        timestamp: str | None,
        signature: str | None,
    ) -> bool:
        """Returns True when the signature was checked, False when the policy let it through unchecked."""
        if not self.secret:
            if self.require_signature:
                raise WebhookVerificationError("webhook secret is not configured")
            logger.warning("UNSAFE: webhook secret not configured; accepting notification without verification")
            return False

        if not delivery_id or not timestamp or not signature:
            if self.require_signature:
                raise WebhookVerificationError("missing webhook signature headers")
            logger.warning(
                "webhook signature headers missing; accepting unverified notification delivery_id=%s",
                delivery_id,
            )
            return False

        if not verify_webhook_signature(body, delivery_id, timestamp, signature, self.secret):
            raise WebhookVerificationError("invalid webhook signature")
        return True


async def verify_webhook_request(
    request: Request,
    webhook_id: str | None = Header(default=None, alias=WEBHOOK_ID_HEADER),
    webhook_timestamp: str | None = Header(default=None, alias=WEBHOOK_TIMESTAMP_HEADER),
    webhook_signature: str | None = Header(default=None, alias=WEBHOOK_SIGNATURE_HEADER),
) -> bytes:
    body = await request.body()
    verifier: WebhookVerifier = request.app.state.webhook_verifier
    try:
        verifier.verify(
            body,
            delivery_id=webhook_id,
            timestamp=webhook_timestamp,
            signature=webhook_signature,
        )
    except WebhookVerificationError as exc:
        logger.error("webhook rejected delivery_id=%s reason=%s", webhook_id, exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    return body
