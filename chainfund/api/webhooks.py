from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.database.database import get_db
from chainfund.kafka.producer import notification_producer
from chainfund.schemas.webhook import WebhookAckResponse
from chainfund.services.webhook import WebhookReconciler

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}", response_model=WebhookAckResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """
    Receive a signed payment provider event.

    200 when the event was applied, was already applied, or is not one we
    handle; 401 on a bad signature; 409 while another delivery of the same
    event is being applied and 5xx when the financial state could not be
    persisted, so the provider redelivers.
    """
    reconciler = WebhookReconciler.for_provider(provider)
    raw_body = await request.body()
    signature: Optional[str] = request.headers.get(reconciler.provider.signature_header)

    ack = await reconciler.handle(db, raw_body, signature)
    if ack.notifications:
        background_tasks.add_task(notification_producer.notify_all, ack.notifications)

    return WebhookAckResponse(received=ack.received, duplicate=ack.duplicate, event=ack.event)
