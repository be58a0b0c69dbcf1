"""
Webhook reconciliation handler.

Entry point for provider events: verify, parse, then drive the donation
store, ledger, commission and payout components inside one database
transaction. Notifications are returned to the caller and only sent after
the transaction commits.
"""
from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.cache.redis import shared_store
from chainfund.core.clock import utcnow
from chainfund.core.errors import EventInFlightError
from chainfund.kafka.producer import Notification
from chainfund.middleware.metrics import webhook_events_total
from chainfund.middleware.tracing import get_tracer
from chainfund.models.campaign import Campaign
from chainfund.providers import EventKind, PaymentProvider, ProviderEvent, get_provider
from chainfund.services import chainer as chainer_service
from chainfund.services import donation_status, ledger
from chainfund.services.donation import DonationService, donation_notification
from chainfund.services.payout import PayoutService

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

CLAIM_TTL_SECONDS = 120


@dataclass
class WebhookAck:
    received: bool = True
    duplicate: bool = False
    event: Optional[str] = None
    notifications: List[Notification] = field(default_factory=list)


class WebhookReconciler:
    """Verifies provider events and applies their financial effects once"""

    def __init__(self, provider: PaymentProvider):
        self.provider = provider

    @classmethod
    def for_provider(cls, provider_kind: str) -> "WebhookReconciler":
        return cls(get_provider(provider_kind))

    async def handle(self, db: AsyncSession, raw_body: bytes, signature: Optional[str]) -> WebhookAck:
        # Nothing in the body is looked at before the signature checks out
        self.provider.verify_signature(raw_body, signature)

        event = self.provider.parse_event(raw_body)
        if event is None:
            webhook_events_total.labels(provider=self.provider.name, event="unknown", outcome="ignored").inc()
            return WebhookAck()

        if not await shared_store.claim(event.claim_key, CLAIM_TTL_SECONDS):
            logger.info("Webhook event in flight elsewhere", reference=event.reference, event_type=event.event_type)
            webhook_events_total.labels(provider=event.provider, event=event.event_type, outcome="in_flight").inc()
            raise EventInFlightError(
                "Event is being processed, retry later",
                detail={"event": event.event_type, "reference": event.reference},
            )

        # The claim only serialises concurrent deliveries; it is dropped on
        # every exit so a redelivery always reaches the guarded updates
        try:
            with tracer.start_as_current_span("webhook.reconcile") as span:
                span.set_attribute("provider", event.provider)
                span.set_attribute("event_type", event.event_type)
                try:
                    ack = await self._route(db, event)
                    await db.commit()
                except Exception:
                    await db.rollback()
                    webhook_events_total.labels(provider=event.provider, event=event.event_type, outcome="error").inc()
                    logger.exception("Webhook processing failed", reference=event.reference, event_type=event.event_type)
                    raise
        finally:
            await shared_store.release(event.claim_key)

        outcome = "duplicate" if ack.duplicate else "applied"
        webhook_events_total.labels(provider=event.provider, event=event.event_type, outcome=outcome).inc()
        return ack

    async def _route(self, db: AsyncSession, event: ProviderEvent) -> WebhookAck:
        if event.is_transfer:
            _, changed, notifications = await PayoutService.reconcile_transfer_event(db, event)
            return WebhookAck(duplicate=not changed, event=event.event_type, notifications=notifications)

        donation = await DonationService.find_for_event(db, event.donation_id, event.reference)
        if donation is None:
            logger.warning(
                "Webhook event for unknown donation",
                provider=event.provider,
                event_type=event.event_type,
                reference=event.reference,
                donation_id=event.donation_id
            )
            return WebhookAck(event=event.event_type)

        if event.kind == EventKind.PAYMENT_SUCCEEDED:
            return await self._complete(db, event, donation)
        if event.kind == EventKind.PAYMENT_FAILED:
            return await self._fail(db, event, donation)
        if event.kind == EventKind.PAYMENT_CANCELED:
            return await self._cancel(db, event, donation)
        if event.kind == EventKind.REFUNDED:
            return await self._refund(db, event, donation)
        return WebhookAck(event=event.event_type)

    async def _complete(self, db: AsyncSession, event: ProviderEvent, donation) -> WebhookAck:
        now = utcnow()
        if not await DonationService.mark_completed(db, donation, event.reference, now):
            logger.info(
                "Donation already processed",
                donation_id=donation.id,
                status=donation.payment_status.value,
                duplicate=True
            )
            return WebhookAck(duplicate=True, event=event.event_type)

        logger.info(
            "Donation completed",
            donation_id=donation.id,
            campaign_id=donation.campaign_id,
            amount=str(donation.amount),
            currency=donation.currency
        )
        if event.amount is not None and event.amount != donation.amount:
            logger.warning(
                "Provider amount differs from donation amount",
                donation_id=donation.id,
                provider_amount=str(event.amount),
                amount=str(donation.amount)
            )

        notifications = [donation_notification("donation_completed", donation)]
        result = await ledger.apply_completed_donation(db, donation.campaign_id, donation.amount, now)
        notifications.extend(result.notifications)

        campaign = result.campaign or await db.get(Campaign, donation.campaign_id)
        if campaign is not None:
            notifications.extend(await chainer_service.distribute_commissions(db, donation, campaign))
        else:
            logger.warning("Skipping commissions for donation without campaign", donation_id=donation.id)

        return WebhookAck(event=event.event_type, notifications=notifications)

    async def _fail(self, db: AsyncSession, event: ProviderEvent, donation) -> WebhookAck:
        reason = donation_status.failure_reason_from_provider(
            event.provider, event.provider_status, event.error_message
        )
        if not await DonationService.mark_failed(db, donation, reason):
            logger.info("Donation failure already recorded", donation_id=donation.id, duplicate=True)
            return WebhookAck(duplicate=True, event=event.event_type)

        logger.info(
            "Donation failed",
            donation_id=donation.id,
            reason=reason.value,
            retry_attempts=donation.retry_attempts,
            retryable=donation_status.is_retry_eligible(donation)
        )
        return WebhookAck(
            event=event.event_type,
            notifications=[donation_notification(
                "donation_failed", donation,
                failure_reason=reason.value,
                message=donation_status.status_message(donation),
            )],
        )

    async def _cancel(self, db: AsyncSession, event: ProviderEvent, donation) -> WebhookAck:
        if not await DonationService.mark_canceled(db, donation):
            return WebhookAck(duplicate=True, event=event.event_type)
        logger.info("Donation canceled", donation_id=donation.id)
        return WebhookAck(event=event.event_type)

    async def _refund(self, db: AsyncSession, event: ProviderEvent, donation) -> WebhookAck:
        if not await DonationService.mark_refunded(db, donation):
            logger.info(
                "Refund not applicable",
                donation_id=donation.id,
                status=donation.payment_status.value,
                duplicate=True
            )
            return WebhookAck(duplicate=True, event=event.event_type)

        result = await ledger.apply_refund(db, donation.campaign_id, donation.amount)
        logger.info(
            "Donation refunded",
            donation_id=donation.id,
            campaign_id=donation.campaign_id,
            current_amount=str(result.current_amount) if result.campaign else None
        )
        return WebhookAck(
            event=event.event_type,
            notifications=[donation_notification("donation_refunded", donation)],
        )
