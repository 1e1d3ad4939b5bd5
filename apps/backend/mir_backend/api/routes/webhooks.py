"""Inbound GitHub webhook endpoint."""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.api.dependencies import get_db, get_delivery_tracker
from mir_backend.core.security import InsecureSecretError, get_webhook_secret
from mir_backend.ingestion.delivery_tracker import DeliveryTracker
from mir_backend.services.webhook_service import ingest

logger = logging.getLogger(__name__)

router = APIRouter()


class WebhookAck(BaseModel):
    ok: bool = True
    event: str
    action: str | None
    handled: bool
    duplicate: bool
    notifications: int


@router.post("/github", response_model=WebhookAck)
async def receive_github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    tracker: DeliveryTracker = Depends(get_delivery_tracker),
    x_hub_signature_256: Annotated[str | None, Header()] = None,
    x_github_event: Annotated[str | None, Header()] = None,
    x_github_delivery: Annotated[str | None, Header()] = None,
) -> WebhookAck:
    """
    Verifies and ingests one delivery.

    200 for ingested and ignored deliveries alike, 401 on a bad signature,
    400 on a malformed body or missing headers.
    """
    try:
        secret = get_webhook_secret()
    except InsecureSecretError as e:
        logger.error(f"Webhook secret misconfigured: {e}")
        raise HTTPException(status_code=503, detail="Webhook ingestion is not configured")

    raw_body = await request.body()
    result = await ingest(
        raw_body,
        x_hub_signature_256,
        x_github_event,
        x_github_delivery,
        db,
        secret=secret,
        tracker=tracker,
        ip_address=request.client.host if request.client else None,
    )

    return WebhookAck(
        event=result.event,
        action=result.action,
        handled=result.handled,
        duplicate=result.duplicate,
        notifications=result.notifications,
    )
