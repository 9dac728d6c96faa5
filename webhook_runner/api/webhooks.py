"""GitHub webhook receiver.

POST / receives push webhooks.  Follows a strict order:
  1. Read raw body (before JSON parsing)
  2. Verify HMAC-SHA256 signature when a secret is configured
  3. Parse payload
  4. Route event off the event loop (clone, verify, run command)
  5. Return the outcome

Authentication failures never reach the router.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from webhook_runner.config import Settings
from webhook_runner.core.exceptions import HmacVerificationError, HubSignatureError
from webhook_runner.core.router import PUSH_EVENT, PushEventRouter
from webhook_runner.core.security import verify_hub_signature
from webhook_runner.models.push_event import PushEvent
from webhook_runner.models.status import Outcome, Status

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_event_router(request: Request) -> PushEventRouter:
    return request.app.state.router


async def authenticate_webhook(
    request: Request,
    x_hub_signature_256: str | None = Header(default=None),
    config: Settings = Depends(get_app_settings),
) -> bytes:
    """Read the raw body and verify its signature.

    Returns:
        The raw body bytes, exactly as received.

    Raises:
        HTTPException(401): Signature header missing or HMAC mismatch.
        HTTPException(500): Signature header present but malformed.
    """
    # Step 1: Read raw body BEFORE parsing; the HMAC covers these exact bytes.
    body = await request.body()

    secret = config.webhook_secret
    if secret is None:
        return body

    if x_hub_signature_256 is None:
        logger.warning("Webhook rejected: missing X-Hub-Signature-256 header")
        raise HTTPException(status_code=401, detail="Missing X-Hub-Signature-256 header")

    try:
        verify_hub_signature(x_hub_signature_256, secret, body)
    except HmacVerificationError as exc:
        logger.warning("Webhook rejected: signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid webhook signature") from exc
    except HubSignatureError as exc:
        logger.warning("Webhook rejected: malformed signature header", extra={"error": str(exc)})
        raise HTTPException(status_code=500, detail=f"Malformed signature header: {exc}") from exc

    return body


@router.post("/", status_code=200)
async def receive_webhook(
    body: bytes = Depends(authenticate_webhook),
    x_github_event: str = Header(default=PUSH_EVENT),
    x_github_delivery: str = Header(default=""),
    event_router: PushEventRouter = Depends(get_event_router),
) -> dict:
    """Receive a webhook event and act on it.

    Returns:
        The serialized ``Outcome`` of handling the event.

    Raises:
        HTTPException(400): The body is not a valid push payload.
    """
    if x_github_event != PUSH_EVENT:
        logger.debug(
            "Unhandled event type, returning 200 (no-op)",
            extra={"event": x_github_event, "delivery_id": x_github_delivery},
        )
        return Outcome(status=Status.IGNORED).model_dump(mode="json")

    # Step 3: Parse the validated payload.
    try:
        event = PushEvent.model_validate_json(body)
    except ValidationError as exc:
        logger.warning(
            "Webhook payload rejected",
            extra={"delivery_id": x_github_delivery, "errors": exc.error_count()},
        )
        raise HTTPException(status_code=400, detail="Invalid push payload") from exc

    logger.info(
        "Webhook received",
        extra={
            "event": x_github_event,
            "ref": event.ref,
            "commit": event.head_commit_id,
            "delivery_id": x_github_delivery,
        },
    )

    # Step 4: Clone, verify and dispatch are blocking; keep them off the loop.
    outcome = await run_in_threadpool(event_router.route, x_github_event, event, body)
    return outcome.model_dump(mode="json")
