"""
Payout dispatcher.

Turns campaign withdrawals and approved commission payouts into provider
transfers. A payout row is always committed before the provider is called,
and every status change is a guarded UPDATE so replays and races settle on
one outcome.
"""
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Type

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.cache.redis import shared_store
from chainfund.core.clock import utcnow
from chainfund.core.config import get_settings
from chainfund.core.currency import (
    FEE_SCHEDULES,
    PayoutProvider,
    is_supported,
    provider_for_currency,
    quantize,
)
from chainfund.core.errors import (
    BelowMinimumPayoutError,
    ForbiddenError,
    InsufficientFundsError,
    InvalidTransitionError,
    NotFoundError,
    PayoutConflictError,
    ProviderError,
    RateLimitExceededError,
    UnsupportedCurrencyError,
    ValidationError,
)
from chainfund.kafka.producer import Notification
from chainfund.middleware.metrics import payout_transitions_total
from chainfund.models.base import Base
from chainfund.models.campaign import Campaign
from chainfund.models.chainer import Chainer, ChainerStatus, CommissionDestination
from chainfund.models.payout import (
    OPEN_CAMPAIGN_PAYOUT_STATUSES,
    CampaignPayout,
    CampaignPayoutStatus,
    CommissionPayout,
    CommissionPayoutStatus,
)
from chainfund.providers import EventKind, ProviderEvent, TransferRequest, get_provider
from chainfund.schemas.payout import PayoutRequest
from chainfund.services import chainer as chainer_service

logger = structlog.get_logger(__name__)
settings = get_settings()

CAMPAIGN = "campaign"
COMMISSION = "commission"


@dataclass(frozen=True)
class PayoutTable:
    """Status vocabulary of one payout table"""
    model: Type[Base]
    approved: object
    processing: object
    succeeded: object
    failed: object
    transfer_id_column: str


PAYOUT_TABLES: Dict[str, PayoutTable] = {
    CAMPAIGN: PayoutTable(
        model=CampaignPayout,
        approved=CampaignPayoutStatus.APPROVED,
        processing=CampaignPayoutStatus.PROCESSING,
        succeeded=CampaignPayoutStatus.COMPLETED,
        failed=CampaignPayoutStatus.FAILED,
        transfer_id_column="provider_transfer_id",
    ),
    COMMISSION: PayoutTable(
        model=CommissionPayout,
        approved=CommissionPayoutStatus.APPROVED,
        processing=CommissionPayoutStatus.PROCESSING,
        succeeded=CommissionPayoutStatus.PAID,
        failed=CommissionPayoutStatus.FAILED,
        transfer_id_column="transaction_id",
    ),
}


def calculate_fees(amount: Decimal, provider: PayoutProvider, currency: str) -> Tuple[Decimal, Decimal]:
    """Return (fees, net) for a gross amount under the provider's fee schedule"""
    schedule = FEE_SCHEDULES[provider]
    fees = quantize(amount * schedule.percentage / Decimal(100) + schedule.fixed, currency)
    return fees, quantize(amount - fees, currency)


def generate_reference(prefix: str, owner_id: str) -> str:
    """Unique, lowercase transfer reference (Paystack rejects upper case)"""
    millis = int(time.time() * 1000)
    return f"{prefix}-{millis}-{owner_id.replace('-', '')[:8]}-{secrets.token_hex(3)}".lower()


def _payout_notification(event_type: str, payout_type: str, payout) -> Notification:
    user_id = payout.user_id if payout_type == CAMPAIGN else None
    amount = payout.net_amount if payout_type == CAMPAIGN else payout.amount
    return (event_type, {
        "payout_id": payout.id,
        "payout_type": payout_type,
        "user_id": user_id,
        "campaign_id": payout.campaign_id,
        "amount": str(amount),
        "currency": payout.currency,
        "reference": payout.reference,
        "status": payout.status.value,
        "failure_reason": payout.failure_reason,
    })


def _recipient_key(provider: PayoutProvider) -> str:
    return "stripe_account_id" if provider == PayoutProvider.STRIPE else "recipient_code"


# Commission payouts that count against a chainer's unpaid balance
REQUESTED_COMMISSION_STATUSES = (
    CommissionPayoutStatus.APPROVED,
    CommissionPayoutStatus.PROCESSING,
    CommissionPayoutStatus.PAID,
)


def _claimable_grant_conditions(chainer_id: str) -> tuple:
    """Pending grants nobody has asked to withdraw yet"""
    return (
        CommissionPayout.chainer_id == chainer_id,
        CommissionPayout.status == CommissionPayoutStatus.PENDING,
        CommissionPayout.reference.is_(None),
        CommissionPayout.destination == CommissionDestination.KEEP,
    )


@dataclass
class CommissionWithdrawal:
    chainer_id: str
    campaign_id: str
    requested_amount: Decimal
    amount: Decimal
    currency: str
    provider: PayoutProvider
    available_balance: Decimal
    payouts: List[CommissionPayout]


class PayoutService:
    """Payout requests, dispatch and transfer reconciliation"""

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    @staticmethod
    async def available_balance(db: AsyncSession, campaign: Campaign) -> Decimal:
        """Raised total minus every payout that has not failed"""
        result = await db.execute(
            select(func.coalesce(func.sum(CampaignPayout.requested_amount), 0)).where(
                CampaignPayout.campaign_id == campaign.id,
                CampaignPayout.status != CampaignPayoutStatus.FAILED,
            )
        )
        committed = Decimal(str(result.scalar_one()))
        return quantize(Decimal(str(campaign.current_amount)) - committed, campaign.currency)

    @staticmethod
    async def commission_available_balance(db: AsyncSession, chainer: Chainer, currency: str) -> Decimal:
        """
        Commission earned minus what has already been requested, capped by
        the grants still open to claim. Rejected and failed requests do not
        count as requested.
        """
        requested = await db.execute(
            select(func.coalesce(func.sum(CommissionPayout.amount), 0)).where(
                CommissionPayout.chainer_id == chainer.id,
                or_(
                    CommissionPayout.status.in_(REQUESTED_COMMISSION_STATUSES),
                    (CommissionPayout.status == CommissionPayoutStatus.PENDING)
                    & CommissionPayout.reference.isnot(None),
                ),
            )
        )
        claimable = await db.execute(
            select(func.coalesce(func.sum(CommissionPayout.amount), 0)).where(
                *_claimable_grant_conditions(chainer.id)
            )
        )
        earned_left = Decimal(str(chainer.commission_earned)) - Decimal(str(requested.scalar_one()))
        available = min(earned_left, Decimal(str(claimable.scalar_one())))
        return quantize(max(available, Decimal("0")), currency)

    @staticmethod
    def _validated_bank_details(request: PayoutRequest) -> dict:
        provider = request.payout_provider
        currency = request.currency
        if not is_supported(provider, currency):
            raise UnsupportedCurrencyError(
                f"{currency} is not supported by {provider.value}",
                detail={"provider": provider.value, "currency": currency},
            )

        recipient_key = _recipient_key(provider)
        bank_details = request.bank_details.model_dump(exclude_none=True)
        if not bank_details.get(recipient_key):
            raise ValidationError(
                f"Bank details for {provider.value} require {recipient_key}",
                detail={"missing": recipient_key},
            )
        return bank_details

    @staticmethod
    def _check_minimum(amount: Decimal, provider: PayoutProvider, currency: str):
        schedule = FEE_SCHEDULES[provider]
        if amount < schedule.minimum_payout:
            raise BelowMinimumPayoutError(
                f"Minimum payout for {provider.value} is {schedule.minimum_payout} {currency}",
                detail={"minimum": str(schedule.minimum_payout)},
            )

    @staticmethod
    async def _count_request(user_id: str):
        """Only requests that passed validation use up the caller's quota"""
        if await shared_store.hit_rate_limit(
            f"payout:{user_id}",
            settings.payout_rate_limit_requests,
            settings.payout_rate_limit_window_seconds,
        ):
            raise RateLimitExceededError("Too many payout requests, try again later")

    @staticmethod
    async def request_payout(
        db: AsyncSession,
        user_id: str,
        request: PayoutRequest,
    ) -> Tuple[CampaignPayout, List[Notification]]:
        bank_details = PayoutService._validated_bank_details(request)
        provider = request.payout_provider
        currency = request.currency

        campaign = await db.get(Campaign, request.campaign_id, populate_existing=True)
        if campaign is None:
            raise NotFoundError(f"Campaign {request.campaign_id} not found")
        if campaign.creator_id != user_id:
            raise ForbiddenError("Only the campaign creator can request a payout")
        if campaign.currency.upper() != currency:
            raise UnsupportedCurrencyError(
                f"Campaign is denominated in {campaign.currency}",
                detail={"campaign_currency": campaign.currency, "currency": currency},
            )

        existing = await db.execute(
            select(CampaignPayout.id, CampaignPayout.status).where(
                CampaignPayout.campaign_id == campaign.id,
                CampaignPayout.status.in_(OPEN_CAMPAIGN_PAYOUT_STATUSES),
            )
        )
        open_payout = existing.first()
        if open_payout:
            raise PayoutConflictError(
                "Campaign already has a payout in progress",
                detail={"payout_id": open_payout.id, "status": open_payout.status.value},
            )

        amount = quantize(request.amount, currency)
        PayoutService._check_minimum(amount, provider, currency)

        available = await PayoutService.available_balance(db, campaign)
        if amount > available:
            raise InsufficientFundsError(
                "Requested amount exceeds available balance",
                detail={"requested": str(amount), "available": str(available)},
            )

        fees, net = calculate_fees(amount, provider, currency)
        if net <= 0:
            raise ValidationError("Amount does not cover provider fees", detail={"fees": str(fees)})

        await PayoutService._count_request(user_id)

        payout = CampaignPayout(
            user_id=user_id,
            campaign_id=campaign.id,
            requested_amount=amount,
            gross_amount=amount,
            fees=fees,
            net_amount=net,
            currency=currency,
            status=CampaignPayoutStatus.PENDING,
            provider=provider,
            reference=generate_reference("cp", campaign.id),
            bank_details=bank_details,
        )
        db.add(payout)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise PayoutConflictError("Campaign already has a payout in progress")
        await db.refresh(payout)

        payout_transitions_total.labels(payout_type=CAMPAIGN, status=payout.status.value).inc()
        logger.info(
            "Payout requested",
            payout_id=payout.id,
            campaign_id=campaign.id,
            amount=str(amount),
            fees=str(fees),
            net_amount=str(net),
            provider=provider.value,
            reference=payout.reference
        )
        return payout, [_payout_notification("payout_requested", CAMPAIGN, payout)]

    @staticmethod
    async def request_commission_payout(
        db: AsyncSession,
        user_id: str,
        request: PayoutRequest,
    ) -> Tuple[CommissionWithdrawal, List[Notification]]:
        """
        Claim the chainer's oldest unclaimed grants that fit within the
        requested amount. Claimed grants stay pending until an admin approves
        them; each one carries its own transfer reference.
        """
        bank_details = PayoutService._validated_bank_details(request)
        provider = request.payout_provider
        currency = request.currency

        chainer = await chainer_service.get_chainer(db, request.chainer_id)
        if chainer is None:
            raise NotFoundError(f"Chainer {request.chainer_id} not found")
        if chainer.user_id != user_id:
            raise ForbiddenError("Only the chainer can withdraw their commission")
        if chainer.status != ChainerStatus.ACTIVE:
            raise ForbiddenError(f"Chainer is {chainer.status.value}")
        campaign = await db.get(Campaign, chainer.campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {chainer.campaign_id} not found")
        if campaign.currency.upper() != currency:
            raise UnsupportedCurrencyError(
                f"Commission is denominated in {campaign.currency}",
                detail={"campaign_currency": campaign.currency, "currency": currency},
            )

        amount = quantize(request.amount, currency)
        PayoutService._check_minimum(amount, provider, currency)

        available = await PayoutService.commission_available_balance(db, chainer, currency)
        if amount > available:
            raise InsufficientFundsError(
                "Requested amount exceeds unpaid commission",
                detail={"requested": str(amount), "available": str(available)},
            )

        grants = await db.execute(
            select(CommissionPayout.id, CommissionPayout.amount)
            .where(*_claimable_grant_conditions(chainer.id))
            .order_by(CommissionPayout.created_at)
        )
        table = PAYOUT_TABLES[COMMISSION]
        claimed_ids: List[str] = []
        claimed = Decimal("0")
        for grant_id, grant_amount in grants.all():
            if claimed + grant_amount > amount:
                continue
            if await PayoutService._guarded_update(
                db, table, grant_id, (CommissionPayoutStatus.PENDING,),
                CommissionPayout.reference.is_(None),
                provider=provider,
                reference=generate_reference("cm", chainer.id),
            ):
                claimed_ids.append(grant_id)
                claimed += grant_amount

        if not claimed_ids:
            await db.rollback()
            raise ValidationError(
                "Requested amount is smaller than every unclaimed commission",
                detail={"requested": str(amount)},
            )

        await PayoutService._count_request(user_id)
        await chainer_service.set_bank_details(db, chainer.id, bank_details)
        await db.commit()

        payouts = [(await PayoutService._load(db, COMMISSION, payout_id))[1] for payout_id in claimed_ids]
        remaining = await PayoutService.commission_available_balance(db, chainer, currency)
        withdrawal = CommissionWithdrawal(
            chainer_id=chainer.id,
            campaign_id=campaign.id,
            requested_amount=amount,
            amount=quantize(claimed, currency),
            currency=currency,
            provider=provider,
            available_balance=remaining,
            payouts=payouts,
        )

        payout_transitions_total.labels(payout_type=COMMISSION, status="requested").inc(len(payouts))
        logger.info(
            "Commission withdrawal requested",
            chainer_id=chainer.id,
            requested=str(amount),
            claimed=str(withdrawal.amount),
            grants=len(payouts),
            provider=provider.value
        )
        return withdrawal, [("commission_payout_requested", {
            "user_id": user_id,
            "chainer_id": chainer.id,
            "campaign_id": campaign.id,
            "amount": str(withdrawal.amount),
            "currency": currency,
            "payout_ids": claimed_ids,
        })]

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    @staticmethod
    async def _guarded_update(
        db: AsyncSession,
        table: PayoutTable,
        payout_id: str,
        allowed_from,
        *conditions,
        **values,
    ) -> bool:
        model = table.model
        result = await db.execute(
            update(model)
            .where(model.id == payout_id, model.status.in_(allowed_from), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def _load(db: AsyncSession, payout_type: str, payout_id: str):
        table = PAYOUT_TABLES.get(payout_type)
        if table is None:
            raise ValidationError(f"Unknown payout type: {payout_type}")
        payout = await db.get(table.model, payout_id, populate_existing=True)
        if payout is None:
            raise NotFoundError(f"Payout {payout_id} not found")
        return table, payout

    @staticmethod
    async def approve_campaign_payout(db: AsyncSession, payout_id: str) -> CampaignPayout:
        table, payout = await PayoutService._load(db, CAMPAIGN, payout_id)
        if not await PayoutService._guarded_update(
            db, table, payout_id, (CampaignPayoutStatus.PENDING,), status=CampaignPayoutStatus.APPROVED
        ):
            raise InvalidTransitionError(f"Cannot approve a {payout.status.value} payout")
        await db.commit()
        _, payout = await PayoutService._load(db, CAMPAIGN, payout_id)
        payout_transitions_total.labels(payout_type=CAMPAIGN, status="approved").inc()
        logger.info("Campaign payout approved", payout_id=payout_id)
        return payout

    @staticmethod
    async def approve_commission_payout(db: AsyncSession, payout_id: str) -> CommissionPayout:
        table, payout = await PayoutService._load(db, COMMISSION, payout_id)
        # A chainer's withdrawal request already chose the provider
        provider = payout.provider or provider_for_currency(payout.currency)
        if provider is None:
            raise UnsupportedCurrencyError(f"No payout provider supports {payout.currency}")

        if not await PayoutService._guarded_update(
            db, table, payout_id, (CommissionPayoutStatus.PENDING,),
            status=CommissionPayoutStatus.APPROVED,
            provider=provider,
            reference=payout.reference or generate_reference("cm", payout.chainer_id),
        ):
            raise InvalidTransitionError(f"Cannot approve a {payout.status.value} commission payout")
        await db.commit()
        _, payout = await PayoutService._load(db, COMMISSION, payout_id)
        payout_transitions_total.labels(payout_type=COMMISSION, status="approved").inc()
        logger.info("Commission payout approved", payout_id=payout_id, provider=provider.value)
        return payout

    @staticmethod
    async def reject_commission_payout(db: AsyncSession, payout_id: str, reason: str) -> CommissionPayout:
        table, payout = await PayoutService._load(db, COMMISSION, payout_id)
        if not await PayoutService._guarded_update(
            db, table, payout_id,
            (CommissionPayoutStatus.PENDING, CommissionPayoutStatus.APPROVED),
            status=CommissionPayoutStatus.REJECTED,
            failure_reason=reason,
        ):
            raise InvalidTransitionError(f"Cannot reject a {payout.status.value} commission payout")
        await db.commit()
        _, payout = await PayoutService._load(db, COMMISSION, payout_id)
        payout_transitions_total.labels(payout_type=COMMISSION, status="rejected").inc()
        logger.info("Commission payout rejected", payout_id=payout_id, reason=reason)
        return payout

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    @staticmethod
    async def _destination(db: AsyncSession, payout_type: str, payout) -> dict:
        if payout_type == CAMPAIGN:
            return payout.bank_details or {}

        if payout.destination == CommissionDestination.DONATE:
            raise ValidationError("Commission is set to be donated and cannot be transferred")
        chainer = await db.get(Chainer, payout.chainer_id, populate_existing=True)
        if chainer is None or not chainer.bank_details:
            raise ValidationError("Chainer has no payout bank details")
        return chainer.bank_details

    @staticmethod
    async def _mark_failed(
        db: AsyncSession,
        payout_type: str,
        payout_id: str,
        reason: str,
    ) -> Tuple[object, List[Notification]]:
        table = PAYOUT_TABLES[payout_type]
        await PayoutService._guarded_update(
            db, table, payout_id, (table.processing,),
            status=table.failed,
            failure_reason=reason[:255],
        )
        await db.commit()
        _, payout = await PayoutService._load(db, payout_type, payout_id)
        payout_transitions_total.labels(payout_type=payout_type, status="failed").inc()
        return payout, [_payout_notification("payout_failed", payout_type, payout)]

    @staticmethod
    async def dispatch_payout(
        db: AsyncSession,
        payout_type: str,
        payout_id: str,
    ) -> Tuple[object, List[Notification]]:
        """approved -> processing (committed) -> provider transfer -> outcome"""
        table, payout = await PayoutService._load(db, payout_type, payout_id)
        destination = await PayoutService._destination(db, payout_type, payout)

        if not await PayoutService._guarded_update(
            db, table, payout_id, (table.approved,), status=table.processing
        ):
            raise InvalidTransitionError(
                f"Only approved payouts can be dispatched (payout is {payout.status.value})"
            )
        await db.commit()
        payout_transitions_total.labels(payout_type=payout_type, status="processing").inc()
        return await PayoutService._send(db, payout_type, payout_id, destination)

    @staticmethod
    async def _send(
        db: AsyncSession,
        payout_type: str,
        payout_id: str,
        destination: dict,
    ) -> Tuple[object, List[Notification]]:
        """Call the provider for a committed processing row and record the outcome"""
        table, payout = await PayoutService._load(db, payout_type, payout_id)
        amount = payout.net_amount if payout_type == CAMPAIGN else payout.amount
        request = TransferRequest(
            amount=amount,
            currency=payout.currency,
            destination=destination,
            idempotency_key=payout.reference,
            metadata={"payoutId": payout.id, "type": payout_type, "reference": payout.reference},
            reason=f"{payout_type.capitalize()} payout {payout.reference}",
        )

        try:
            result = await get_provider(payout.provider.value).create_transfer(request)
        except ProviderError as e:
            logger.error(
                "Payout transfer failed",
                payout_id=payout_id,
                payout_type=payout_type,
                transient=e.transient,
                error=e.message
            )
            return await PayoutService._mark_failed(db, payout_type, payout_id, e.message)
        except Exception as e:
            # Outcome unknown: fail the row so the retry sweep re-sends it
            # under the same reference
            logger.exception("Unexpected error during payout transfer", payout_id=payout_id, payout_type=payout_type)
            await db.rollback()
            return await PayoutService._mark_failed(
                db, payout_type, payout_id, f"Unexpected transfer error: {type(e).__name__}"
            )

        values = {table.transfer_id_column: result.transfer_id}
        now = utcnow()
        if result.succeeded:
            values.update(status=table.succeeded, processed_at=now)
        elif result.failed:
            values.update(status=table.failed, failure_reason=(result.failure_reason or "Transfer failed")[:255])

        await PayoutService._guarded_update(db, table, payout_id, (table.processing,), **values)
        if result.succeeded and payout_type == COMMISSION:
            await chainer_service.mark_commission_paid(db, payout.chainer_id)
        await db.commit()
        _, payout = await PayoutService._load(db, payout_type, payout_id)

        logger.info(
            "Payout dispatched",
            payout_id=payout_id,
            payout_type=payout_type,
            transfer_id=result.transfer_id,
            status=payout.status.value
        )
        notifications = []
        if result.succeeded:
            payout_transitions_total.labels(payout_type=payout_type, status=payout.status.value).inc()
            notifications.append(_payout_notification("payout_completed", payout_type, payout))
        elif result.failed:
            payout_transitions_total.labels(payout_type=payout_type, status="failed").inc()
            notifications.append(_payout_notification("payout_failed", payout_type, payout))
        return payout, notifications

    @staticmethod
    async def _dispatch_many(db: AsyncSession, targets: List[Tuple[str, str]]) -> Tuple[Dict[str, int], List[Notification]]:
        counts = {"dispatched": 0, "failed": 0, "skipped": 0}
        notifications: List[Notification] = []
        for payout_type, payout_id in targets:
            try:
                payout, payout_notifications = await PayoutService.dispatch_payout(db, payout_type, payout_id)
            except (InvalidTransitionError, ValidationError) as e:
                await db.rollback()
                logger.warning("Skipping payout dispatch", payout_id=payout_id, payout_type=payout_type, error=e.message)
                counts["skipped"] += 1
                continue
            notifications.extend(payout_notifications)
            if payout.status == PAYOUT_TABLES[payout_type].failed:
                counts["failed"] += 1
            else:
                counts["dispatched"] += 1
        return counts, notifications

    @staticmethod
    async def process_approved_payouts(db: AsyncSession, limit: int = 50) -> Tuple[Dict[str, int], List[Notification]]:
        targets = []
        for payout_type, table in PAYOUT_TABLES.items():
            result = await db.execute(
                select(table.model.id)
                .where(table.model.status == table.approved)
                .order_by(table.model.created_at)
                .limit(limit)
            )
            targets.extend((payout_type, payout_id) for payout_id in result.scalars().all())

        counts, notifications = await PayoutService._dispatch_many(db, targets)
        logger.info("Approved payouts processed", **counts)
        return counts, notifications

    @staticmethod
    async def _retry_affordable(db: AsyncSession, payout: CampaignPayout) -> bool:
        """A failed withdrawal no longer counts against the balance, so check it again"""
        campaign = await db.get(Campaign, payout.campaign_id, populate_existing=True)
        if campaign is None:
            return False
        available = await PayoutService.available_balance(db, campaign)
        return payout.requested_amount <= available

    @staticmethod
    async def retry_failed_payouts(
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Tuple[Dict[str, int], List[Notification]]:
        """Re-approve failed payouts past the retry delay, then dispatch them"""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.payout_retry_delay_minutes)
        targets = []
        abandoned = 0

        for payout_type, table in PAYOUT_TABLES.items():
            model = table.model
            result = await db.execute(
                select(model).where(
                    model.status == table.failed,
                    model.retry_count < settings.payout_max_retries,
                    model.updated_at < cutoff,
                )
            )
            for payout in result.scalars().all():
                attempt = payout.retry_count + 1
                notes = payout.notes + "\n" if payout.notes else ""

                if payout_type == CAMPAIGN and not await PayoutService._retry_affordable(db, payout):
                    # Terminal: the funds went out through a later payout
                    await PayoutService._guarded_update(
                        db, table, payout.id, (table.failed,),
                        retry_count=settings.payout_max_retries,
                        failure_reason="Balance no longer covers this payout",
                        notes=f"{notes}Not retried: requested amount exceeds available balance",
                    )
                    await db.commit()
                    abandoned += 1
                    logger.warning(
                        "Failed payout abandoned, balance already paid out",
                        payout_id=payout.id,
                        requested_amount=str(payout.requested_amount)
                    )
                    continue

                note = f"Retry {attempt}/{settings.payout_max_retries} after: {payout.failure_reason or 'unknown error'}"
                try:
                    reopened = await PayoutService._guarded_update(
                        db, table, payout.id, (table.failed,),
                        status=table.approved,
                        retry_count=attempt,
                        failure_reason=None,
                        notes=f"{notes}{note}",
                    )
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.warning("Payout retry blocked by an open payout", payout_id=payout.id)
                    continue
                if reopened:
                    logger.info("Payout scheduled for retry", payout_id=payout.id, payout_type=payout_type, attempt=attempt)
                    targets.append((payout_type, payout.id))

        counts, notifications = await PayoutService._dispatch_many(db, targets)
        counts["retried"] = len(targets)
        counts["abandoned"] = abandoned
        logger.info("Failed payouts retried", **counts)
        return counts, notifications

    @staticmethod
    async def recover_stale_processing(
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Tuple[Dict[str, int], List[Notification]]:
        """
        Re-send processing payouts whose provider call never came back (no
        transfer id after the timeout). The unchanged reference is the
        idempotency key, so a transfer that did go out is not paid twice.
        Rows that already carry a transfer id wait for their webhook.
        """
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.payout_processing_timeout_minutes)
        counts = {"resent": 0, "failed": 0}
        notifications: List[Notification] = []

        for payout_type, table in PAYOUT_TABLES.items():
            model = table.model
            transfer_id = getattr(model, table.transfer_id_column)
            stale = (model.updated_at < cutoff, transfer_id.is_(None))
            result = await db.execute(select(model.id).where(model.status == table.processing, *stale))

            for payout_id in result.scalars().all():
                # Touching updated_at keeps a concurrent sweep off this row
                claimed = await PayoutService._guarded_update(
                    db, table, payout_id, (table.processing,), *stale, updated_at=now
                )
                await db.commit()
                if not claimed:
                    continue

                _, payout = await PayoutService._load(db, payout_type, payout_id)
                try:
                    destination = await PayoutService._destination(db, payout_type, payout)
                except ValidationError as e:
                    payout, payout_notifications = await PayoutService._mark_failed(db, payout_type, payout_id, e.message)
                else:
                    logger.info("Re-sending stale processing payout", payout_id=payout_id, payout_type=payout_type)
                    payout, payout_notifications = await PayoutService._send(db, payout_type, payout_id, destination)

                notifications.extend(payout_notifications)
                counts["failed" if payout.status == table.failed else "resent"] += 1

        logger.info("Stale processing payouts recovered", **counts)
        return counts, notifications

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    @staticmethod
    async def _locate(db: AsyncSession, event: ProviderEvent) -> Optional[Tuple[str, object]]:
        """Find the payout a transfer event refers to: id, then reference, then transfer id"""
        if event.payout_id:
            types = [event.payout_type] if event.payout_type in PAYOUT_TABLES else list(PAYOUT_TABLES)
            for payout_type in types:
                payout = await db.get(PAYOUT_TABLES[payout_type].model, event.payout_id)
                if payout is not None:
                    return payout_type, payout

        for payout_type, table in PAYOUT_TABLES.items():
            model = table.model
            conditions = [getattr(model, table.transfer_id_column) == event.reference]
            if event.payout_reference:
                conditions.insert(0, model.reference == event.payout_reference)
            for condition in conditions:
                result = await db.execute(select(model).where(condition))
                payout = result.scalars().first()
                if payout is not None:
                    return payout_type, payout
        return None

    @staticmethod
    async def reconcile_transfer_event(
        db: AsyncSession,
        event: ProviderEvent,
    ) -> Tuple[Optional[object], bool, List[Notification]]:
        """
        Apply a transfer outcome. Returns (payout, changed, notifications);
        changed is False for replays and for events about unknown payouts.
        Does not commit.
        """
        located = await PayoutService._locate(db, event)
        if located is None:
            logger.warning("Transfer event for unknown payout", reference=event.reference, event_type=event.event_type)
            return None, False, []

        payout_type, payout = located
        table = PAYOUT_TABLES[payout_type]
        now = utcnow()

        if event.kind == EventKind.TRANSFER_SUCCEEDED:
            allowed_from = (table.approved, table.processing)
            values = {"status": table.succeeded, "processed_at": now}
            event_name = "payout_completed"
        else:
            # A reversal can undo a completed transfer; a failure cannot
            allowed_from = (table.approved, table.processing)
            if event.kind == EventKind.TRANSFER_REVERSED:
                allowed_from = allowed_from + (table.succeeded,)
            values = {"status": table.failed, "failure_reason": (event.error_message or "Transfer failed")[:255]}
            event_name = "payout_failed"

        if not getattr(payout, table.transfer_id_column):
            values[table.transfer_id_column] = event.reference

        changed = await PayoutService._guarded_update(db, table, payout.id, allowed_from, **values)
        _, payout = await PayoutService._load(db, payout_type, payout.id)
        if not changed:
            logger.info(
                "Transfer event already applied",
                payout_id=payout.id,
                status=payout.status.value,
                duplicate=True
            )
            return payout, False, []

        if payout_type == COMMISSION and event.kind == EventKind.TRANSFER_SUCCEEDED:
            await chainer_service.mark_commission_paid(db, payout.chainer_id)

        payout_transitions_total.labels(payout_type=payout_type, status=payout.status.value).inc()
        logger.info(
            "Transfer reconciled",
            payout_id=payout.id,
            payout_type=payout_type,
            status=payout.status.value,
            event_type=event.event_type
        )
        return payout, True, [_payout_notification(event_name, payout_type, payout)]

    @staticmethod
    async def get_campaign_payout(db: AsyncSession, payout_id: str, user_id: str) -> CampaignPayout:
        _, payout = await PayoutService._load(db, CAMPAIGN, payout_id)
        if payout.user_id != user_id:
            raise ForbiddenError("Payout belongs to another user")
        return payout
