"""
Integration Tests for the Donation Engine
Drives the API against a real database (SQLite by default, any async URL in CI)
"""
import sys
from pathlib import Path
# Add parent folder (project root) to sys.path so local modules can be imported
PROJECT_ROOT = Path(__file__).resolve().parents[1]
proj_root_str = str(PROJECT_ROOT)
if proj_root_str not in sys.path:
    sys.path.insert(0, proj_root_str)

import asyncio
import json
import os
import random
import time
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from chainfund.cache.redis import shared_store
from chainfund.core.clock import utcnow
from chainfund.core.config import get_settings
from chainfund.core.currency import PayoutProvider
from chainfund.core.errors import ProviderError
from chainfund.database.database import get_db
from chainfund.main import app
from chainfund.models import (
    Base,
    Campaign,
    CampaignPayout,
    CampaignPayoutStatus,
    CampaignStatus,
    Chainer,
    ChainerStatus,
    ClosureReason,
    CommissionDestination,
    CommissionPayout,
    CommissionPayoutStatus,
    Donation,
    DonationStatus,
    FailureReason,
)
from chainfund.providers import TransferResult
from chainfund.providers import paystack as paystack_module
from chainfund.providers import stripe as stripe_module
from chainfund.providers.paystack import PaystackProvider
from chainfund.services import ledger
from chainfund.services.webhook import WebhookReconciler

settings = get_settings()

# Test database URL - Use env var for CI, fallback for local
TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    "sqlite+aiosqlite:///./chainfund_integration.db"
)

# Create test engine
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    poolclass=NullPool,
    echo=False
)

# Create test session factory
TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
CRON_HEADERS = {"Authorization": f"Bearer {settings.cron_secret}"}


# ============================================================================
# FIXTURES
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def test_db():
    """Create test database and tables"""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    # Teardown - drop all tables
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def db_session(test_db):
    """Get database session for tests"""
    async with TestSessionLocal() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_session):
    """Create test client with database override"""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def sweep_sessions():
    """Point the housekeeping jobs at the test database"""
    with patch("chainfund.services.sweeps.AsyncSessionLocal", TestSessionLocal):
        yield


@pytest_asyncio.fixture
async def make_campaign(db_session):
    async def _make(**overrides):
        fields = dict(
            creator_id="creator-1",
            title="Clean Water for Ikorodu",
            goal_amount=Decimal("1000000.00"),
            current_amount=Decimal("0.00"),
            currency="NGN",
            chainer_commission_rate=Decimal("5.00"),
            is_chained=True,
            status=CampaignStatus.ACTIVE,
            is_active=True,
        )
        fields.update(overrides)
        campaign = Campaign(**fields)
        db_session.add(campaign)
        await db_session.commit()
        await db_session.refresh(campaign)
        return campaign
    return _make


@pytest_asyncio.fixture
async def make_chainer(db_session):
    async def _make(campaign, user_id, **overrides):
        fields = dict(
            user_id=user_id,
            campaign_id=campaign.id,
            referral_code=f"ref-{uuid.uuid4().hex[:10]}",
            status=ChainerStatus.ACTIVE,
            commission_destination=CommissionDestination.KEEP,
        )
        fields.update(overrides)
        chainer = Chainer(**fields)
        db_session.add(chainer)
        await db_session.commit()
        await db_session.refresh(chainer)
        return chainer
    return _make


@pytest_asyncio.fixture
async def make_donation(db_session):
    async def _make(campaign, **overrides):
        fields = dict(
            campaign_id=campaign.id,
            donor_id="donor-1",
            amount=Decimal("10000.00"),
            currency=campaign.currency,
            payment_status=DonationStatus.PENDING,
            payment_method="paystack",
            retry_attempts=0,
        )
        fields.update(overrides)
        donation = Donation(**fields)
        db_session.add(donation)
        await db_session.commit()
        await db_session.refresh(donation)
        return donation
    return _make


# ============================================================================
# HELPERS
# ============================================================================

async def post_paystack(client, payload, signature=None):
    body = json.dumps(payload).encode()
    if signature is None:
        signature = paystack_module.compute_signature(settings.paystack_secret_key, body)
    return await client.post(
        "/webhooks/paystack",
        content=body,
        headers={"content-type": "application/json", "x-paystack-signature": signature},
    )


async def post_stripe(client, payload):
    body = json.dumps(payload).encode()
    timestamp = int(time.time())
    signature = stripe_module.compute_signature(settings.stripe_webhook_secret, timestamp, body)
    return await client.post(
        "/webhooks/stripe",
        content=body,
        headers={"content-type": "application/json", "stripe-signature": f"t={timestamp},v1={signature}"},
    )


def charge_success(donation, reference=None):
    return {
        "event": "charge.success",
        "data": {
            "id": 1001,
            "reference": reference or f"ps_{donation.id[:8]}",
            "amount": int(donation.amount * 100),
            "currency": donation.currency,
            "status": "success",
            "metadata": {"donationId": donation.id},
        },
    }


async def reload(db_session, obj):
    await db_session.refresh(obj)
    return obj


async def count(db_session, model, *conditions):
    result = await db_session.execute(select(func.count()).select_from(model).where(*conditions))
    return result.scalar_one()


# ============================================================================
# HEALTH CHECK TESTS
# ============================================================================

class TestHealthCheck:
    """Test health endpoints"""

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


# ============================================================================
# WEBHOOK AUTHENTICATION TESTS
# ============================================================================

class TestWebhookAuthentication:
    """Test signature checks and unknown events"""

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_without_side_effects(self, client, db_session, make_campaign, make_donation):
        campaign = await make_campaign()
        donation = await make_donation(campaign)

        response = await post_paystack(client, charge_success(donation), signature="0" * 128)

        assert response.status_code == 401
        assert response.json()["code"] == "invalid_signature"
        assert (await reload(db_session, donation)).payment_status == DonationStatus.PENDING
        assert (await reload(db_session, campaign)).current_amount == Decimal("0")

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client):
        response = await client.post("/webhooks/paystack", content=b'{"event": "charge.success"}')

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_event_acknowledged(self, client, db_session):
        response = await post_paystack(client, {"event": "subscription.create", "data": {"id": 1}})

        assert response.status_code == 200
        assert response.json()["received"] is True

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, client):
        response = await client.post("/webhooks/paypal", content=b"{}")

        assert response.status_code == 422
        assert response.json()["code"] == "unsupported_provider"

    @pytest.mark.asyncio
    async def test_event_for_unknown_donation_acknowledged(self, client, db_session, make_campaign):
        campaign = await make_campaign()
        payload = {
            "event": "charge.success",
            "data": {"reference": "ps_missing", "amount": 100000, "currency": "NGN",
                     "metadata": {"donationId": str(uuid.uuid4())}},
        }

        response = await post_paystack(client, payload)

        assert response.status_code == 200
        assert (await reload(db_session, campaign)).current_amount == Decimal("0")


# ============================================================================
# DONATION COMPLETION TESTS
# ============================================================================

class TestDonationCompletion:
    """Test completed payments flowing into ledger and commissions"""

    @pytest.mark.asyncio
    async def test_referred_donation(self, client, db_session, make_campaign, make_chainer, make_donation):
        campaign = await make_campaign()
        chainer = await make_chainer(campaign, "user-c")
        donation = await make_donation(campaign, chainer_id=chainer.id)

        response = await post_paystack(client, charge_success(donation))

        assert response.status_code == 200
        assert response.json() == {"received": True, "duplicate": False, "event": "charge.success"}

        donation = await reload(db_session, donation)
        assert donation.payment_status == DonationStatus.COMPLETED
        assert donation.processed_at is not None
        assert donation.payment_provider_reference == f"ps_{donation.id[:8]}"

        assert (await reload(db_session, campaign)).current_amount == Decimal("10000.00")

        chainer = await reload(db_session, chainer)
        assert chainer.total_raised == Decimal("10000.00")
        assert chainer.total_referrals == 1
        assert chainer.commission_earned == Decimal("500.00")

        payouts = (await db_session.execute(select(CommissionPayout))).scalars().all()
        assert len(payouts) == 1
        assert payouts[0].chainer_id == chainer.id
        assert payouts[0].amount == Decimal("500.00")
        assert payouts[0].status == CommissionPayoutStatus.PENDING
        assert payouts[0].notes == f"Commission from donation {donation.id} via direct referral"

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, client, db_session, make_campaign, make_chainer, make_donation):
        campaign = await make_campaign()
        chainer = await make_chainer(campaign, "user-c")
        donation = await make_donation(campaign, chainer_id=chainer.id)
        payload = charge_success(donation)

        first = await post_paystack(client, payload)
        second = await post_paystack(client, payload)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert (await reload(db_session, campaign)).current_amount == Decimal("10000.00")
        chainer = await reload(db_session, chainer)
        assert chainer.total_referrals == 1
        assert chainer.commission_earned == Decimal("500.00")
        assert await count(db_session, CommissionPayout) == 1

    @pytest.mark.asyncio
    async def test_self_referral_with_direct_referral(self, client, db_session, make_campaign, make_chainer, make_donation):
        campaign = await make_campaign()
        referrer = await make_chainer(campaign, "user-c")
        donor_chainer = await make_chainer(campaign, "donor-1")
        donation = await make_donation(campaign, chainer_id=referrer.id)

        response = await post_paystack(client, charge_success(donation))

        assert response.status_code == 200
        assert (await reload(db_session, campaign)).current_amount == Decimal("10000.00")

        referrer = await reload(db_session, referrer)
        donor_chainer = await reload(db_session, donor_chainer)
        assert referrer.commission_earned == Decimal("500.00")
        assert referrer.total_referrals == 1
        assert donor_chainer.commission_earned == Decimal("500.00")
        assert donor_chainer.total_raised == Decimal("10000.00")
        assert donor_chainer.total_referrals == 0

        notes = (await db_session.execute(
            select(CommissionPayout.notes).where(CommissionPayout.chainer_id == donor_chainer.id)
        )).scalar_one()
        assert notes.startswith("Self-referral commission")
        assert await count(db_session, CommissionPayout) == 2

    @pytest.mark.asyncio
    async def test_unreferred_donation_pays_no_commission(self, client, db_session, make_campaign, make_donation):
        campaign = await make_campaign()
        donation = await make_donation(campaign)

        await post_paystack(client, charge_success(donation))

        assert (await reload(db_session, campaign)).current_amount == Decimal("10000.00")
        assert await count(db_session, CommissionPayout) == 0

    @pytest.mark.asyncio
    async def test_goal_crossing(self, client, db_session, make_campaign, make_donation):
        campaign = await make_campaign(goal_amount=Decimal("300000.00"), current_amount=Decimal("290000.00"))
        donation = await make_donation(campaign)
        payload = charge_success(donation)

        await post_paystack(client, payload)

        campaign = await reload(db_session, campaign)
        assert campaign.current_amount == Decimal("300000.00")
        assert campaign.status == CampaignStatus.GOAL_REACHED
        assert campaign.goal_reached_at is not None
        assert campaign.auto_close_at - campaign.goal_reached_at == timedelta(weeks=4)
        goal_reached_at = campaign.goal_reached_at

        # Replays must not move the goal timestamp
        await post_paystack(client, payload)
        assert (await reload(db_session, campaign)).goal_reached_at == goal_reached_at

        response = await client.get(f"/campaigns/{campaign.id}/availability")
        body = response.json()
        assert body["can_accept_donations"] is False
        assert body["can_accept_chains"] is False
        assert body["reason"] == "goal_reached"

    @pytest.mark.asyncio
    async def test_late_donation_after_goal_keeps_goal_time(self, client, db_session, make_campaign, make_donation):
        campaign = await make_campaign(goal_amount=Decimal("300000.00"), current_amount=Decimal("290000.00"))
        crossing = await make_donation(campaign)
        # Payment started before the goal was reached
        late = await make_donation(campaign, donor_id="donor-2", amount=Decimal("5000.00"))

        await post_paystack(client, charge_success(crossing))
        campaign = await reload(db_session, campaign)
        goal_reached_at = campaign.goal_reached_at
        auto_close_at = campaign.auto_close_at

        response = await post_paystack(client, charge_success(late))

        assert response.json()["duplicate"] is False
        campaign = await reload(db_session, campaign)
        assert campaign.current_amount == Decimal("305000.00")
        assert campaign.status == CampaignStatus.GOAL_REACHED
        assert campaign.goal_reached_at == goal_reached_at
        assert campaign.auto_close_at == auto_close_at

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(5))
    async def test_delivery_order_and_replays(self, client, db_session, make_campaign, make_donation, seed):
        rng = random.Random(seed)
        amounts = [Decimal("7000.00"), Decimal("5000.50"), Decimal("9000.00"),
                   Decimal("4999.50"), Decimal("6000.00"), Decimal("3000.00")]
        campaign = await make_campaign(goal_amount=Decimal("30000.00"))
        payloads = []
        for index, amount in enumerate(amounts):
            donation = await make_donation(campaign, donor_id=f"donor-{index}", amount=amount)
            payloads.append(charge_success(donation))

        deliveries = payloads + rng.sample(payloads, 3)
        rng.shuffle(deliveries)

        goal_reached_at = None
        for payload in deliveries:
            await post_paystack(client, payload)
            campaign = await reload(db_session, campaign)
            if goal_reached_at is None:
                goal_reached_at = campaign.goal_reached_at
            else:
                assert campaign.goal_reached_at == goal_reached_at

        assert campaign.current_amount == sum(amounts)
        assert campaign.status == CampaignStatus.GOAL_REACHED
        assert goal_reached_at is not None
        assert await count(db_session, Donation, Donation.payment_status == DonationStatus.COMPLETED) == len(amounts)


# ============================================================================
# LEDGER TESTS
# ============================================================================

class TestLedger:
    """Test ledger arithmetic directly"""

    @pytest.mark.asyncio
    async def test_donation_order_does_not_matter(self, db_session, make_campaign):
        amounts = [Decimal("1200.50"), Decimal("300.25"), Decimal("99.99")]
        forward = await make_campaign(title="Forward")
        backward = await make_campaign(title="Backward")

        for amount in amounts:
            await ledger.apply_completed_donation(db_session, forward.id, amount)
        for amount in reversed(amounts):
            await ledger.apply_completed_donation(db_session, backward.id, amount)
        await db_session.commit()

        assert (await reload(db_session, forward)).current_amount == Decimal("1600.74")
        assert (await reload(db_session, backward)).current_amount == Decimal("1600.74")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(5))
    async def test_random_orders_agree(self, db_session, make_campaign, seed):
        rng = random.Random(seed)
        amounts = [Decimal(rng.randint(1, 500000)) / 100 for _ in range(12)]
        first = await make_campaign(title="First order")
        second = await make_campaign(title="Second order")

        for campaign in (first, second):
            order = amounts[:]
            rng.shuffle(order)
            for amount in order:
                await ledger.apply_completed_donation(db_session, campaign.id, amount)
        await db_session.commit()

        assert (await reload(db_session, first)).current_amount == sum(amounts)
        assert (await reload(db_session, second)).current_amount == sum(amounts)

    @pytest.mark.asyncio
    @pytest.mark.skipif(TEST_DATABASE_URL.startswith("sqlite"), reason="SQLite allows a single writer")
    async def test_concurrent_donations(self, db_session, make_campaign):
        campaign = await make_campaign(goal_amount=Decimal("5000.00"))

        async def apply(amount):
            async with TestSessionLocal() as session:
                await ledger.apply_completed_donation(session, campaign.id, amount)
                await session.commit()

        await asyncio.gather(*(apply(Decimal("700.00")) for _ in range(10)))

        campaign = await reload(db_session, campaign)
        assert campaign.current_amount == Decimal("7000.00")
        assert campaign.status == CampaignStatus.GOAL_REACHED
        assert campaign.goal_reached_at is not None

    @pytest.mark.asyncio
    async def test_refund_never_goes_negative(self, db_session, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("50.00"))

        result = await ledger.apply_refund(db_session, campaign.id, Decimal("80.00"))
        await db_session.commit()

        assert result.current_amount == Decimal("0")
        assert (await reload(db_session, campaign)).current_amount == Decimal("0")

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, db_session, test_db):
        result = await ledger.apply_completed_donation(db_session, str(uuid.uuid4()), Decimal("10"))

        assert result.campaign is None
        assert result.current_amount is None


# ============================================================================
# DONATION FAILURE AND RETRY TESTS
# ============================================================================

def payment_failed(donation, intent_id="pi_fail_1"):
    return {
        "id": "evt_failed",
        "type": "payment_intent.payment_failed",
        "data": {"object": {
            "id": intent_id,
            "amount": int(donation.amount * 100),
            "currency": donation.currency.lower(),
            "status": "requires_payment_method",
            "metadata": {"donationId": donation.id},
            "last_payment_error": {
                "code": "card_declined",
                "decline_code": "generic_decline",
                "message": "Your card was declined.",
            },
        }},
    }


def payment_succeeded(donation, intent_id="pi_fail_1"):
    return {
        "id": "evt_succeeded",
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": intent_id,
            "amount": int(donation.amount * 100),
            "currency": donation.currency.lower(),
            "status": "succeeded",
            "metadata": {"donationId": donation.id},
        }},
    }


class TestDonationFailures:
    """Test failed payments, status views and retries"""

    @pytest_asyncio.fixture
    async def failed_donation(self, client, db_session, make_campaign, make_donation):
        campaign = await make_campaign(currency="USD", goal_amount=Decimal("5000.00"))
        donation = await make_donation(campaign, amount=Decimal("25.00"), payment_method="stripe")
        response = await post_stripe(client, payment_failed(donation))
        assert response.status_code == 200
        return campaign, await reload(db_session, donation)

    @pytest.mark.asyncio
    async def test_failure_recorded(self, failed_donation):
        _, donation = failed_donation

        assert donation.payment_status == DonationStatus.FAILED
        assert donation.failure_reason == FailureReason.CARD_DECLINED
        assert donation.retry_attempts == 1

    @pytest.mark.asyncio
    async def test_failure_replay_counts_once(self, client, db_session, failed_donation):
        _, donation = failed_donation

        response = await post_stripe(client, payment_failed(donation))

        assert response.json()["duplicate"] is True
        assert (await reload(db_session, donation)).retry_attempts == 1

    @pytest.mark.asyncio
    async def test_donor_status_view(self, client, failed_donation):
        _, donation = failed_donation

        response = await client.get(f"/donations/{donation.id}/status", headers={"X-User-Id": "donor-1"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "failed"
        assert body["classification"] == "retryable_failed"
        assert body["message"] == "Payment failed - card declined"
        assert body["retryable"] is False
        assert "failure_reason" not in body

    @pytest.mark.asyncio
    async def test_admin_status_view(self, client, failed_donation):
        _, donation = failed_donation

        response = await client.get(f"/donations/{donation.id}/status", headers=ADMIN_HEADERS)

        body = response.json()
        assert body["failure_reason"] == "card_declined"
        assert body["retry_attempts"] == 1
        assert body["payment_provider_reference"] is None

    @pytest.mark.asyncio
    async def test_other_user_cannot_view_status(self, client, failed_donation):
        _, donation = failed_donation

        response = await client.get(f"/donations/{donation.id}/status", headers={"X-User-Id": "someone-else"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_retry_respects_cooldown(self, client, db_session, failed_donation):
        _, donation = failed_donation

        response = await client.post(f"/donations/{donation.id}/retry", headers={"X-User-Id": "donor-1"})

        assert response.status_code == 422
        assert response.json()["code"] == "not_retryable"
        assert response.json()["detail"]["next_retry_at"] is not None

        donation.last_status_update = utcnow() - timedelta(hours=25)
        await db_session.commit()

        response = await client.post(f"/donations/{donation.id}/retry", headers={"X-User-Id": "donor-1"})

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["message"] == "Payment pending - attempt 2 of 3"

    @pytest.mark.asyncio
    async def test_retry_by_other_user_forbidden(self, client, failed_donation):
        _, donation = failed_donation

        response = await client.post(f"/donations/{donation.id}/retry", headers={"X-User-Id": "someone-else"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_late_success_completes_failed_donation(self, client, db_session, failed_donation):
        campaign, donation = failed_donation

        response = await post_stripe(client, payment_succeeded(donation))

        assert response.status_code == 200
        donation = await reload(db_session, donation)
        assert donation.payment_status == DonationStatus.COMPLETED
        assert donation.failure_reason is None
        assert (await reload(db_session, campaign)).current_amount == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_status_of_missing_donation(self, client, test_db):
        response = await client.get(f"/donations/{uuid.uuid4()}/status", headers=ADMIN_HEADERS)

        assert response.status_code == 404


# ============================================================================
# REFUND TESTS
# ============================================================================

class TestRefunds:
    """Test refunds reversing the ledger once"""

    @pytest.mark.asyncio
    async def test_refund_after_completion(self, client, db_session, make_campaign, make_donation):
        campaign = await make_campaign()
        donation = await make_donation(campaign)
        await post_paystack(client, charge_success(donation, reference="ps_refund_1"))
        refund = {
            "event": "refund.processed",
            "data": {"transaction_reference": "ps_refund_1", "amount": 1000000, "currency": "NGN", "status": "processed"},
        }

        first = await post_paystack(client, refund)
        second = await post_paystack(client, refund)

        assert first.status_code == 200
        assert second.json()["duplicate"] is True
        assert (await reload(db_session, donation)).payment_status == DonationStatus.REFUNDED
        assert (await reload(db_session, campaign)).current_amount == Decimal("0")

    @pytest.mark.asyncio
    async def test_refund_of_pending_donation_ignored(self, client, db_session, make_campaign, make_donation):
        campaign = await make_campaign(current_amount=Decimal("5000.00"))
        donation = await make_donation(campaign, payment_provider_reference="ps_pending_1")
        refund = {"event": "refund.processed", "data": {"transaction_reference": "ps_pending_1", "currency": "NGN"}}

        response = await post_paystack(client, refund)

        assert response.json()["duplicate"] is True
        assert (await reload(db_session, donation)).payment_status == DonationStatus.PENDING
        assert (await reload(db_session, campaign)).current_amount == Decimal("5000.00")


# ============================================================================
# CAMPAIGN LIFECYCLE TESTS
# ============================================================================

class TestCampaignAdministration:
    """Test admin lifecycle operations"""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, client, db_session, make_campaign):
        campaign = await make_campaign()

        first = await client.post(f"/admin/campaigns/{campaign.id}/close", headers=ADMIN_HEADERS)
        second = await client.post(f"/admin/campaigns/{campaign.id}/close", headers=ADMIN_HEADERS)

        assert first.status_code == 200
        assert first.json()["status"] == "closed"
        assert first.json()["closure_reason"] == "manual"
        assert first.json()["is_active"] is False
        assert second.status_code == 200
        assert second.json()["closed_at"] == first.json()["closed_at"]

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, client, make_campaign):
        campaign = await make_campaign()

        response = await client.post(f"/admin/campaigns/{campaign.id}/close", headers={"X-User-Id": "creator-1"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_close_missing_campaign(self, client, test_db):
        response = await client.post(f"/admin/campaigns/{uuid.uuid4()}/close", headers=ADMIN_HEADERS)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, client, make_campaign):
        campaign = await make_campaign()

        paused = await client.post(f"/admin/campaigns/{campaign.id}/pause", headers=ADMIN_HEADERS)
        availability = await client.get(f"/campaigns/{campaign.id}/availability")
        resumed = await client.post(f"/admin/campaigns/{campaign.id}/resume", headers=ADMIN_HEADERS)

        assert paused.json()["status"] == "paused"
        assert availability.json()["reason"] == "paused"
        assert resumed.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_resume_active_campaign_conflicts(self, client, make_campaign):
        campaign = await make_campaign()

        response = await client.post(f"/admin/campaigns/{campaign.id}/resume", headers=ADMIN_HEADERS)

        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_closure_stats(self, client, make_campaign):
        await make_campaign()
        await make_campaign(status=CampaignStatus.CLOSED, is_active=False)

        response = await client.get("/admin/campaigns/closure-stats", headers=ADMIN_HEADERS)

        assert response.json()["active"] == 1
        assert response.json()["closed"] == 1
        assert response.json()["paused"] == 0


# ============================================================================
# CRON TESTS
# ============================================================================

class TestCronJobs:
    """Test housekeeping jobs exposed as cron endpoints"""

    @pytest.mark.asyncio
    async def test_requires_secret(self, client):
        missing = await client.post("/cron/close-campaigns")
        wrong = await client.post("/cron/close-campaigns", headers={"Authorization": "Bearer nope"})

        assert missing.status_code == 401
        assert wrong.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        response = await client.post("/cron/reindex", headers=CRON_HEADERS)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_campaign_sweep(self, client, db_session, sweep_sessions, make_campaign):
        expired = await make_campaign(duration="1 week", created_at=utcnow() - timedelta(days=8))
        past_window = await make_campaign(
            status=CampaignStatus.GOAL_REACHED,
            goal_reached_at=utcnow() - timedelta(weeks=5),
            auto_close_at=utcnow() - timedelta(weeks=1),
        )
        running = await make_campaign(duration="1 month")

        response = await client.post("/cron/close-campaigns", headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.json()["results"] == {"closed": 1, "expired": 1, "goal_reached": 0}
        assert (await reload(db_session, expired)).status == CampaignStatus.EXPIRED
        past_window = await reload(db_session, past_window)
        assert past_window.status == CampaignStatus.CLOSED
        assert past_window.closure_reason == ClosureReason.GOAL_REACHED
        assert (await reload(db_session, running)).status == CampaignStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_pending_donation_cleanup(self, client, db_session, sweep_sessions, make_campaign, make_donation):
        campaign = await make_campaign()
        stale = await make_donation(campaign, created_at=utcnow() - timedelta(hours=2))
        fresh = await make_donation(campaign)

        response = await client.post("/cron/cleanup-pending-donations", headers=CRON_HEADERS)

        assert response.json()["results"] == {"timed_out": 1}
        stale = await reload(db_session, stale)
        assert stale.payment_status == DonationStatus.FAILED
        assert stale.failure_reason == FailureReason.TIMEOUT
        assert stale.retry_attempts == 1
        assert (await reload(db_session, fresh)).payment_status == DonationStatus.PENDING


# ============================================================================
# CAMPAIGN PAYOUT TESTS
# ============================================================================

def payout_body(campaign, **overrides):
    body = {
        "campaignId": campaign.id,
        "amount": "50000.00",
        "currency": "NGN",
        "payoutProvider": "paystack",
        "bankDetails": {
            "account_name": "Ada Obi",
            "account_number": "0123456789",
            "bank_code": "058",
            "recipient_code": "RCP_ada",
        },
    }
    body.update(overrides)
    return body


CREATOR_HEADERS = {"X-User-Id": "creator-1"}


class TestPayoutRequests:
    """Test campaign withdrawal requests"""

    @pytest.mark.asyncio
    async def test_request_payout(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))

        response = await client.post("/payouts", json=payout_body(campaign), headers=CREATOR_HEADERS)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert Decimal(body["requested_amount"]) == Decimal("50000")
        assert Decimal(body["fees"]) == Decimal("750")
        assert Decimal(body["net_amount"]) == Decimal("49250")
        assert body["provider"] == "paystack"
        assert body["reference"].startswith("cp-")
        assert body["reference"] == body["reference"].lower()
        assert body["estimated_delivery"] == "1-3 business days"

    @pytest.mark.asyncio
    async def test_second_open_payout_conflicts(self, client, db_session, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))

        first = await client.post("/payouts", json=payout_body(campaign), headers=CREATOR_HEADERS)
        second = await client.post("/payouts", json=payout_body(campaign, amount="1000.00"), headers=CREATOR_HEADERS)

        assert first.status_code == 201
        assert second.status_code == 409
        assert second.json()["code"] == "payout_conflict"
        assert await count(db_session, CampaignPayout) == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, client, db_session, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))

        response = await client.post("/payouts", json=payout_body(campaign, amount="100000.01"), headers=CREATOR_HEADERS)

        assert response.status_code == 422
        assert response.json()["code"] == "insufficient_funds"
        assert await count(db_session, CampaignPayout) == 0

    @pytest.mark.asyncio
    async def test_failed_payouts_release_balance(self, client, db_session, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))
        db_session.add(CampaignPayout(
            user_id="creator-1",
            campaign_id=campaign.id,
            requested_amount=Decimal("100000.00"),
            gross_amount=Decimal("100000.00"),
            fees=Decimal("1500.00"),
            net_amount=Decimal("98500.00"),
            currency="NGN",
            status=CampaignPayoutStatus.FAILED,
            provider=PayoutProvider.PAYSTACK,
            reference="cp-old-failed",
        ))
        await db_session.commit()

        response = await client.post("/payouts", json=payout_body(campaign, amount="100000.00"), headers=CREATOR_HEADERS)

        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_currency_must_match_campaign(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))
        body = payout_body(campaign, currency="USD", payoutProvider="stripe",
                           bankDetails={"stripe_account_id": "acct_1"})

        response = await client.post("/payouts", json=body, headers=CREATOR_HEADERS)

        assert response.status_code == 422
        assert response.json()["code"] == "unsupported_currency"

    @pytest.mark.asyncio
    async def test_provider_must_support_currency(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))
        body = payout_body(campaign, payoutProvider="stripe", bankDetails={"stripe_account_id": "acct_1"})

        response = await client.post("/payouts", json=body, headers=CREATOR_HEADERS)

        assert response.status_code == 422
        assert response.json()["code"] == "unsupported_currency"

    @pytest.mark.asyncio
    async def test_below_minimum(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))

        response = await client.post("/payouts", json=payout_body(campaign, amount="50.00"), headers=CREATOR_HEADERS)

        assert response.status_code == 422
        assert response.json()["code"] == "below_minimum_payout"

    @pytest.mark.asyncio
    async def test_recipient_required(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))
        body = payout_body(campaign, bankDetails={"account_number": "0123456789"})

        response = await client.post("/payouts", json=body, headers=CREATOR_HEADERS)

        assert response.status_code == 422
        assert response.json()["detail"] == {"missing": "recipient_code"}

    @pytest.mark.asyncio
    async def test_only_creator(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))

        response = await client.post("/payouts", json=payout_body(campaign), headers={"X-User-Id": "user-c"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_authentication_required(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))

        response = await client.post("/payouts", json=payout_body(campaign))

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_rejected_request_not_rate_counted(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))
        hit = AsyncMock(return_value=False)

        with patch.object(shared_store, "hit_rate_limit", new=hit):
            rejected = await client.post("/payouts", json=payout_body(campaign, amount="100000.01"),
                                         headers=CREATOR_HEADERS)
            hit.assert_not_awaited()
            accepted = await client.post("/payouts", json=payout_body(campaign), headers=CREATOR_HEADERS)

        assert rejected.status_code == 422
        assert accepted.status_code == 201
        hit.assert_awaited_once()
        assert hit.await_args.args[0] == "payout:creator-1"

    @pytest.mark.asyncio
    async def test_rate_limited(self, client, db_session, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))

        with patch.object(shared_store, "hit_rate_limit", new=AsyncMock(return_value=True)):
            response = await client.post("/payouts", json=payout_body(campaign), headers=CREATOR_HEADERS)

        assert response.status_code == 429
        assert response.json()["code"] == "rate_limited"
        assert await count(db_session, CampaignPayout) == 0

    @pytest.mark.asyncio
    async def test_get_payout(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))
        created = (await client.post("/payouts", json=payout_body(campaign), headers=CREATOR_HEADERS)).json()

        own = await client.get(f"/payouts/{created['id']}", headers=CREATOR_HEADERS)
        other = await client.get(f"/payouts/{created['id']}", headers={"X-User-Id": "user-c"})

        assert own.status_code == 200
        assert own.json()["reference"] == created["reference"]
        assert other.status_code == 403


# ============================================================================
# PAYOUT DISPATCH AND RECONCILIATION TESTS
# ============================================================================

class TestPayoutDispatch:
    """Test sending approved payouts and reconciling transfer events"""

    @pytest_asyncio.fixture
    async def approved_payout(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))
        created = (await client.post("/payouts", json=payout_body(campaign), headers=CREATOR_HEADERS)).json()
        response = await client.post(f"/admin/payouts/{created['id']}/approve", headers=ADMIN_HEADERS)
        assert response.json()["status"] == "approved"
        return response.json()

    @pytest.mark.asyncio
    async def test_dispatch_pending_transfer_then_webhook(self, client, approved_payout):
        send = AsyncMock(return_value=TransferResult(transfer_id="TRF_1", status="pending"))

        with patch.object(PaystackProvider, "_send_transfer", new=send):
            dispatched = await client.post(f"/admin/payouts/{approved_payout['id']}/dispatch", headers=ADMIN_HEADERS)

        assert dispatched.status_code == 200
        assert dispatched.json()["status"] == "processing"
        assert dispatched.json()["provider_transfer_id"] == "TRF_1"
        request = send.await_args.args[0]
        assert request.idempotency_key == approved_payout["reference"]
        assert request.amount == Decimal("49250.00")
        assert request.destination["recipient_code"] == "RCP_ada"

        event = {
            "event": "transfer.success",
            "data": {"transfer_code": "TRF_1", "reference": approved_payout["reference"],
                     "amount": 4925000, "currency": "NGN", "status": "success"},
        }
        first = await post_paystack(client, event)
        second = await post_paystack(client, event)
        payout = await client.get(f"/payouts/{approved_payout['id']}", headers=CREATOR_HEADERS)

        assert first.json()["duplicate"] is False
        assert second.json()["duplicate"] is True
        assert payout.json()["status"] == "completed"
        assert payout.json()["processed_at"] is not None

    @pytest.mark.asyncio
    async def test_dispatch_success(self, client, approved_payout):
        send = AsyncMock(return_value=TransferResult(transfer_id="TRF_2", status="success"))

        with patch.object(PaystackProvider, "_send_transfer", new=send):
            response = await client.post(f"/admin/payouts/{approved_payout['id']}/dispatch", headers=ADMIN_HEADERS)

        assert response.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_rejected_transfer_marks_failed(self, client, approved_payout):
        send = AsyncMock(side_effect=ProviderError("Invalid recipient", transient=False))

        with patch.object(PaystackProvider, "_send_transfer", new=send):
            response = await client.post(f"/admin/payouts/{approved_payout['id']}/dispatch", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert response.json()["failure_reason"] == "Invalid recipient"

    @pytest.mark.asyncio
    async def test_dispatch_requires_approval(self, client, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("100000.00"))
        created = (await client.post("/payouts", json=payout_body(campaign), headers=CREATOR_HEADERS)).json()

        response = await client.post(f"/admin/payouts/{created['id']}/dispatch", headers=ADMIN_HEADERS)

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_transfer_failure_then_reversal(self, client, approved_payout):
        send = AsyncMock(return_value=TransferResult(transfer_id="TRF_3", status="success"))
        with patch.object(PaystackProvider, "_send_transfer", new=send):
            await client.post(f"/admin/payouts/{approved_payout['id']}/dispatch", headers=ADMIN_HEADERS)

        failed = {"event": "transfer.failed",
                  "data": {"transfer_code": "TRF_3", "amount": 4925000, "currency": "NGN"}}
        reversed_event = {"event": "transfer.reversed",
                          "data": {"transfer_code": "TRF_3", "amount": 4925000, "currency": "NGN"}}

        # A completed transfer ignores a late failure but not a reversal
        assert (await post_paystack(client, failed)).json()["duplicate"] is True
        assert (await post_paystack(client, reversed_event)).json()["duplicate"] is False

        payout = await client.get(f"/payouts/{approved_payout['id']}", headers=CREATOR_HEADERS)
        assert payout.json()["status"] == "failed"
        assert payout.json()["failure_reason"] == "Transfer reversed"

    @pytest.mark.asyncio
    async def test_retry_failed_payouts(self, client, db_session, sweep_sessions, approved_payout):
        with patch.object(PaystackProvider, "_send_transfer",
                          new=AsyncMock(side_effect=ProviderError("Bank offline", transient=False))):
            await client.post(f"/admin/payouts/{approved_payout['id']}/dispatch", headers=ADMIN_HEADERS)
        await db_session.execute(
            update(CampaignPayout)
            .where(CampaignPayout.id == approved_payout["id"])
            .values(updated_at=utcnow() - timedelta(hours=2))
        )
        await db_session.commit()

        with patch.object(PaystackProvider, "_send_transfer",
                          new=AsyncMock(return_value=TransferResult(transfer_id="TRF_4", status="success"))):
            response = await client.post("/cron/retry-payouts", headers=CRON_HEADERS)

        assert response.json()["results"]["retried"] == 1
        assert response.json()["results"]["dispatched"] == 1
        payout = await db_session.get(CampaignPayout, approved_payout["id"], populate_existing=True)
        assert payout.status == CampaignPayoutStatus.COMPLETED
        assert payout.retry_count == 1
        assert payout.notes.startswith("Retry 1/3 after: Bank offline")

    @pytest.mark.asyncio
    async def test_retry_skips_payout_whose_funds_went_out(self, client, db_session, sweep_sessions, make_campaign):
        campaign = await make_campaign(current_amount=Decimal("50000.00"))

        async def withdraw(send):
            created = (await client.post("/payouts", json=payout_body(campaign), headers=CREATOR_HEADERS)).json()
            await client.post(f"/admin/payouts/{created['id']}/approve", headers=ADMIN_HEADERS)
            with patch.object(PaystackProvider, "_send_transfer", new=send):
                response = await client.post(f"/admin/payouts/{created['id']}/dispatch", headers=ADMIN_HEADERS)
            return response.json()

        # The failed withdrawal frees its amount, which a second one then pays out
        failed = await withdraw(AsyncMock(side_effect=ProviderError("Bank offline", transient=False)))
        paid = await withdraw(AsyncMock(return_value=TransferResult(transfer_id="TRF_5", status="success")))
        assert failed["status"] == "failed"
        assert paid["status"] == "completed"
        await db_session.execute(
            update(CampaignPayout)
            .where(CampaignPayout.id == failed["id"])
            .values(updated_at=utcnow() - timedelta(hours=2))
        )
        await db_session.commit()

        send = AsyncMock(return_value=TransferResult(transfer_id="TRF_6", status="success"))
        with patch.object(PaystackProvider, "_send_transfer", new=send):
            first = await client.post("/cron/retry-payouts", headers=CRON_HEADERS)
            second = await client.post("/cron/retry-payouts", headers=CRON_HEADERS)

        assert first.json()["results"]["abandoned"] == 1
        assert first.json()["results"]["retried"] == 0
        assert second.json()["results"]["abandoned"] == 0
        send.assert_not_awaited()
        payout = await db_session.get(CampaignPayout, failed["id"], populate_existing=True)
        assert payout.status == CampaignPayoutStatus.FAILED
        assert payout.retry_count == settings.payout_max_retries
        assert payout.failure_reason == "Balance no longer covers this payout"
        completed = await db_session.execute(
            select(func.sum(CampaignPayout.requested_amount))
            .where(CampaignPayout.status == CampaignPayoutStatus.COMPLETED)
        )
        assert Decimal(str(completed.scalar_one())) == Decimal("50000.00")

    @pytest.mark.asyncio
    async def test_unexpected_transfer_error_marks_failed(self, client, approved_payout):
        send = AsyncMock(side_effect=ValueError("Expecting value"))

        with patch.object(PaystackProvider, "_send_transfer", new=send):
            response = await client.post(f"/admin/payouts/{approved_payout['id']}/dispatch", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert response.json()["failure_reason"] == "Unexpected transfer error: ValueError"

    @pytest.mark.asyncio
    async def test_stale_processing_payout_resent(self, client, db_session, sweep_sessions, approved_payout):
        # The process died between committing processing and hearing from the provider
        await db_session.execute(
            update(CampaignPayout)
            .where(CampaignPayout.id == approved_payout["id"])
            .values(status=CampaignPayoutStatus.PROCESSING, updated_at=utcnow() - timedelta(hours=2))
        )
        await db_session.commit()

        send = AsyncMock(return_value=TransferResult(transfer_id="TRF_7", status="success"))
        with patch.object(PaystackProvider, "_send_transfer", new=send):
            response = await client.post("/cron/recover-payouts", headers=CRON_HEADERS)

        assert response.json()["results"] == {"resent": 1, "failed": 0}
        assert send.await_args.args[0].idempotency_key == approved_payout["reference"]
        payout = await db_session.get(CampaignPayout, approved_payout["id"], populate_existing=True)
        assert payout.status == CampaignPayoutStatus.COMPLETED
        assert payout.provider_transfer_id == "TRF_7"

    @pytest.mark.asyncio
    async def test_processing_payout_with_transfer_waits_for_webhook(self, client, db_session, sweep_sessions,
                                                                     approved_payout):
        await db_session.execute(
            update(CampaignPayout)
            .where(CampaignPayout.id == approved_payout["id"])
            .values(status=CampaignPayoutStatus.PROCESSING, provider_transfer_id="TRF_8",
                    updated_at=utcnow() - timedelta(hours=2))
        )
        await db_session.commit()

        send = AsyncMock()
        with patch.object(PaystackProvider, "_send_transfer", new=send):
            response = await client.post("/cron/recover-payouts", headers=CRON_HEADERS)

        assert response.json()["results"] == {"resent": 0, "failed": 0}
        send.assert_not_awaited()
        payout = await db_session.get(CampaignPayout, approved_payout["id"], populate_existing=True)
        assert payout.status == CampaignPayoutStatus.PROCESSING


# ============================================================================
# COMMISSION PAYOUT TESTS
# ============================================================================

class TestCommissionPayouts:
    """Test commission payouts from grant to transfer"""

    @pytest_asyncio.fixture
    async def earned_commission(self, client, db_session, make_campaign, make_chainer, make_donation):
        campaign = await make_campaign()
        chainer = await make_chainer(campaign, "user-c", bank_details={"recipient_code": "RCP_chainer"})
        donation = await make_donation(campaign, chainer_id=chainer.id)
        await post_paystack(client, charge_success(donation))
        payout = (await db_session.execute(select(CommissionPayout))).scalar_one()
        return chainer, payout

    @pytest.mark.asyncio
    async def test_approve_and_dispatch(self, client, db_session, earned_commission):
        chainer, payout = earned_commission

        approved = await client.post(f"/admin/commission-payouts/{payout.id}/approve", headers=ADMIN_HEADERS)

        assert approved.json()["status"] == "approved"
        assert approved.json()["provider"] == "paystack"
        assert approved.json()["reference"].startswith("cm-")

        send = AsyncMock(return_value=TransferResult(transfer_id="TRF_C1", status="success"))
        with patch.object(PaystackProvider, "_send_transfer", new=send):
            dispatched = await client.post(f"/admin/commission-payouts/{payout.id}/dispatch", headers=ADMIN_HEADERS)

        assert dispatched.json()["status"] == "paid"
        assert dispatched.json()["transaction_id"] == "TRF_C1"
        assert send.await_args.args[0].amount == Decimal("500.00")
        assert (await reload(db_session, chainer)).commission_paid is True

    @pytest.mark.asyncio
    async def test_reject(self, client, earned_commission):
        _, payout = earned_commission

        response = await client.post(
            f"/admin/commission-payouts/{payout.id}/reject",
            json={"reason": "Referral fraud"},
            headers=ADMIN_HEADERS,
        )
        again = await client.post(f"/admin/commission-payouts/{payout.id}/approve", headers=ADMIN_HEADERS)

        assert response.json()["status"] == "rejected"
        assert response.json()["failure_reason"] == "Referral fraud"
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_donated_commission_not_transferred(self, client, db_session, earned_commission):
        _, payout = earned_commission
        payout.destination = CommissionDestination.DONATE
        await db_session.commit()
        await client.post(f"/admin/commission-payouts/{payout.id}/approve", headers=ADMIN_HEADERS)

        response = await client.post(f"/admin/commission-payouts/{payout.id}/dispatch", headers=ADMIN_HEADERS)

        assert response.status_code == 422
        assert (await reload(db_session, payout)).status == CommissionPayoutStatus.APPROVED

    @pytest.mark.asyncio
    async def test_commission_stats(self, client, earned_commission):
        response = await client.get("/commissions/stats", headers={"X-User-Id": "user-c"})

        assert response.status_code == 200
        body = response.json()
        assert body["campaigns_chained"] == 1
        assert body["total_referrals"] == 1
        assert Decimal(body["commission_earned"]) == Decimal("500")
        assert Decimal(body["commission_pending"]) == Decimal("500")
        assert Decimal(body["commission_paid"]) == Decimal("0")


# ============================================================================
# WEBHOOK DELIVERY CLAIM TESTS
# ============================================================================

class TestWebhookDeliveryClaims:
    """Test concurrent and interrupted deliveries of the same event"""

    @pytest.mark.asyncio
    async def test_event_in_flight_elsewhere(self, client, db_session, make_campaign, make_donation):
        campaign = await make_campaign()
        donation = await make_donation(campaign)
        payload = charge_success(donation)

        with patch.object(shared_store, "claim", new=AsyncMock(return_value=False)):
            busy = await post_paystack(client, payload)

        assert busy.status_code == 409
        assert busy.json()["code"] == "event_in_flight"
        assert (await reload(db_session, donation)).payment_status == DonationStatus.PENDING

        redelivered = await post_paystack(client, payload)

        assert redelivered.status_code == 200
        assert redelivered.json()["duplicate"] is False
        assert (await reload(db_session, donation)).payment_status == DonationStatus.COMPLETED
        assert (await reload(db_session, campaign)).current_amount == Decimal("10000.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [asyncio.CancelledError, RuntimeError])
    async def test_interrupted_handler_releases_claim(self, client, db_session, make_campaign, make_donation, error):
        campaign = await make_campaign()
        donation = await make_donation(campaign)
        payload = charge_success(donation)
        body = json.dumps(payload).encode()
        signature = paystack_module.compute_signature(settings.paystack_secret_key, body)
        reconciler = WebhookReconciler.for_provider("paystack")
        release = AsyncMock()

        with patch.object(shared_store, "claim", new=AsyncMock(return_value=True)), \
                patch.object(shared_store, "release", new=release), \
                patch.object(WebhookReconciler, "_route", new=AsyncMock(side_effect=error())):
            with pytest.raises(error):
                await reconciler.handle(db_session, body, signature)

        release.assert_awaited_once_with(reconciler.provider.parse_event(body).claim_key)
        assert (await reload(db_session, donation)).payment_status == DonationStatus.PENDING

        redelivered = await post_paystack(client, payload)

        assert redelivered.json()["duplicate"] is False
        assert (await reload(db_session, donation)).payment_status == DonationStatus.COMPLETED
        assert (await reload(db_session, campaign)).current_amount == Decimal("10000.00")


# ============================================================================
# DONATION CREATION TESTS
# ============================================================================

def donation_body(campaign, **overrides):
    body = {
        "campaignId": campaign.id,
        "amount": "2500.00",
        "currency": "ngn",
        "paymentMethod": "paystack",
    }
    body.update(overrides)
    return body


DONOR_HEADERS = {"X-User-Id": "donor-9"}


class TestDonationCreation:
    """Test starting donations against the campaign's availability"""

    @pytest.mark.asyncio
    async def test_start_referred_donation(self, client, db_session, make_campaign, make_chainer):
        campaign = await make_campaign()
        chainer = await make_chainer(campaign, "user-c")

        response = await client.post(
            "/donations",
            json=donation_body(campaign, referralCode=chainer.referral_code),
            headers=DONOR_HEADERS,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["classification"] == "pending"
        assert Decimal(body["amount"]) == Decimal("2500")
        assert body["currency"] == "NGN"
        donation = await db_session.get(Donation, body["id"])
        assert donation.donor_id == "donor-9"
        assert donation.chainer_id == chainer.id

    @pytest.mark.asyncio
    async def test_guest_donation(self, client, db_session, make_campaign):
        campaign = await make_campaign()

        response = await client.post("/donations", json=donation_body(campaign, paymentMethod="stripe"))

        assert response.status_code == 201
        donation = await db_session.get(Donation, response.json()["id"])
        assert donation.donor_id is None
        assert donation.payment_method == "stripe"

    @pytest.mark.asyncio
    async def test_rejected_once_goal_reached(self, client, db_session, make_campaign):
        campaign = await make_campaign(goal_amount=Decimal("300000.00"), current_amount=Decimal("290000.00"))
        started = await client.post("/donations", json=donation_body(campaign, amount="10000.00"),
                                    headers=DONOR_HEADERS)
        donation = await db_session.get(Donation, started.json()["id"])
        await post_paystack(client, charge_success(donation))

        response = await client.post("/donations", json=donation_body(campaign), headers=DONOR_HEADERS)

        assert response.status_code == 422
        assert response.json()["code"] == "campaign_not_accepting"
        assert response.json()["detail"] == {"reason": "goal_reached"}
        assert await count(db_session, Donation) == 1

    @pytest.mark.asyncio
    async def test_rejected_once_expired(self, client, db_session, make_campaign):
        campaign = await make_campaign(duration="1 week", created_at=utcnow() - timedelta(days=8))

        response = await client.post("/donations", json=donation_body(campaign), headers=DONOR_HEADERS)

        assert response.status_code == 422
        assert response.json()["code"] == "campaign_not_accepting"
        assert response.json()["detail"] == {"reason": "expired"}
        assert await count(db_session, Donation) == 0

    @pytest.mark.asyncio
    async def test_rejected_while_paused(self, client, make_campaign):
        campaign = await make_campaign(status=CampaignStatus.PAUSED)

        response = await client.post("/donations", json=donation_body(campaign), headers=DONOR_HEADERS)

        assert response.status_code == 422
        assert response.json()["detail"] == {"reason": "paused"}

    @pytest.mark.asyncio
    async def test_referral_from_another_campaign(self, client, db_session, make_campaign, make_chainer):
        campaign = await make_campaign()
        other = await make_campaign(title="Solar for Makoko")
        chainer = await make_chainer(other, "user-c")

        response = await client.post(
            "/donations",
            json=donation_body(campaign, chainerId=chainer.id),
            headers=DONOR_HEADERS,
        )

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"
        assert await count(db_session, Donation) == 0

    @pytest.mark.asyncio
    async def test_currency_must_match_campaign(self, client, make_campaign):
        campaign = await make_campaign()

        response = await client.post("/donations", json=donation_body(campaign, currency="USD"),
                                     headers=DONOR_HEADERS)

        assert response.status_code == 422
        assert response.json()["code"] == "unsupported_currency"

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, client, test_db):
        response = await client.post(
            "/donations",
            json={"campaignId": str(uuid.uuid4()), "amount": "10.00", "currency": "NGN", "paymentMethod": "paystack"},
        )

        assert response.status_code == 404


# ============================================================================
# CHAIN JOIN TESTS
# ============================================================================

class TestChainJoin:
    """Test chaining a campaign to get a referral link"""

    @pytest.mark.asyncio
    async def test_join(self, client, db_session, make_campaign):
        campaign = await make_campaign()

        response = await client.post(
            f"/campaigns/{campaign.id}/chain",
            json={"commissionDestination": "donate"},
            headers={"X-User-Id": "user-j"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["user_id"] == "user-j"
        assert body["campaign_id"] == campaign.id
        assert body["referral_code"]
        assert body["commission_destination"] == "donate"
        assert body["status"] == "active"

    @pytest.mark.asyncio
    async def test_join_twice_conflicts(self, client, db_session, make_campaign):
        campaign = await make_campaign()

        first = await client.post(f"/campaigns/{campaign.id}/chain", headers={"X-User-Id": "user-j"})
        second = await client.post(f"/campaigns/{campaign.id}/chain", headers={"X-User-Id": "user-j"})

        assert first.status_code == 201
        assert first.json()["commission_destination"] == "keep"
        assert second.status_code == 409
        assert second.json()["code"] == "already_chained"
        assert await count(db_session, Chainer) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides, reason", [
        ({"status": CampaignStatus.PAUSED}, "paused"),
        ({"status": CampaignStatus.GOAL_REACHED}, "goal_reached"),
        ({"is_chained": False}, "not_active"),
    ])
    async def test_join_rejected(self, client, db_session, make_campaign, overrides, reason):
        campaign = await make_campaign(**overrides)

        response = await client.post(f"/campaigns/{campaign.id}/chain", headers={"X-User-Id": "user-j"})

        assert response.status_code == 422
        assert response.json()["code"] == "campaign_not_accepting"
        assert response.json()["detail"] == {"reason": reason}
        assert await count(db_session, Chainer) == 0

    @pytest.mark.asyncio
    async def test_join_requires_user(self, client, make_campaign):
        campaign = await make_campaign()

        response = await client.post(f"/campaigns/{campaign.id}/chain")

        assert response.status_code == 401


# ============================================================================
# COMMISSION WITHDRAWAL TESTS
# ============================================================================

def withdrawal_body(chainer, **overrides):
    body = {
        "chainerId": chainer.id,
        "amount": "1000.00",
        "currency": "NGN",
        "payoutProvider": "paystack",
        "bankDetails": {"account_name": "Chidi Eze", "recipient_code": "RCP_chainer"},
    }
    body.update(overrides)
    return body


CHAINER_HEADERS = {"X-User-Id": "user-c"}


class TestCommissionWithdrawals:
    """Test chainers withdrawing their unpaid commission"""

    @pytest_asyncio.fixture
    async def chainer(self, client, make_campaign, make_chainer, make_donation):
        campaign = await make_campaign()
        chainer = await make_chainer(campaign, "user-c")
        # Two referred donations earn two 500.00 grants
        for donor_id in ("donor-1", "donor-2"):
            donation = await make_donation(campaign, donor_id=donor_id, chainer_id=chainer.id)
            await post_paystack(client, charge_success(donation))
        return chainer

    @pytest.mark.asyncio
    async def test_withdraw_all(self, client, db_session, chainer):
        response = await client.post("/payouts", json=withdrawal_body(chainer), headers=CHAINER_HEADERS)

        assert response.status_code == 201
        body = response.json()
        assert Decimal(body["requested_amount"]) == Decimal("1000")
        assert Decimal(body["amount"]) == Decimal("1000")
        assert Decimal(body["available_balance"]) == Decimal("0")
        assert body["provider"] == "paystack"
        assert body["estimated_delivery"] == "1-3 business days"
        assert len(body["payouts"]) == 2
        for payout in body["payouts"]:
            assert payout["status"] == "pending"
            assert payout["provider"] == "paystack"
            assert payout["reference"].startswith("cm-")
        assert (await reload(db_session, chainer)).bank_details["recipient_code"] == "RCP_chainer"

    @pytest.mark.asyncio
    async def test_claimed_grant_approved_and_paid(self, client, chainer):
        withdrawal = (await client.post("/payouts", json=withdrawal_body(chainer), headers=CHAINER_HEADERS)).json()
        claimed = withdrawal["payouts"][0]

        approved = await client.post(f"/admin/commission-payouts/{claimed['id']}/approve", headers=ADMIN_HEADERS)

        assert approved.json()["status"] == "approved"
        assert approved.json()["provider"] == "paystack"
        assert approved.json()["reference"] == claimed["reference"]

        send = AsyncMock(return_value=TransferResult(transfer_id="TRF_C2", status="success"))
        with patch.object(PaystackProvider, "_send_transfer", new=send):
            dispatched = await client.post(f"/admin/commission-payouts/{claimed['id']}/dispatch",
                                           headers=ADMIN_HEADERS)

        assert dispatched.json()["status"] == "paid"
        request = send.await_args.args[0]
        assert request.idempotency_key == claimed["reference"]
        assert request.amount == Decimal("500.00")
        assert request.destination["recipient_code"] == "RCP_chainer"

    @pytest.mark.asyncio
    async def test_partial_withdrawal_claims_whole_grants(self, client, chainer):
        response = await client.post("/payouts", json=withdrawal_body(chainer, amount="700.00"),
                                     headers=CHAINER_HEADERS)

        body = response.json()
        assert response.status_code == 201
        assert Decimal(body["requested_amount"]) == Decimal("700")
        assert Decimal(body["amount"]) == Decimal("500")
        assert Decimal(body["available_balance"]) == Decimal("500")
        assert len(body["payouts"]) == 1

    @pytest.mark.asyncio
    async def test_grants_not_claimed_twice(self, client, db_session, chainer):
        first = await client.post("/payouts", json=withdrawal_body(chainer), headers=CHAINER_HEADERS)
        second = await client.post("/payouts", json=withdrawal_body(chainer, amount="500.00"),
                                   headers=CHAINER_HEADERS)

        assert first.status_code == 201
        assert second.status_code == 422
        assert second.json()["code"] == "insufficient_funds"
        assert await count(db_session, CommissionPayout, CommissionPayout.reference.isnot(None)) == 2

    @pytest.mark.asyncio
    async def test_smaller_than_every_grant(self, client, db_session, chainer):
        response = await client.post("/payouts", json=withdrawal_body(chainer, amount="400.00"),
                                     headers=CHAINER_HEADERS)

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"
        assert await count(db_session, CommissionPayout, CommissionPayout.reference.isnot(None)) == 0

    @pytest.mark.asyncio
    async def test_other_user_forbidden(self, client, db_session, chainer):
        response = await client.post("/payouts", json=withdrawal_body(chainer), headers={"X-User-Id": "user-x"})

        assert response.status_code == 403
        assert await count(db_session, CommissionPayout, CommissionPayout.reference.isnot(None)) == 0

    @pytest.mark.asyncio
    async def test_suspended_chainer_forbidden(self, client, db_session, chainer):
        await db_session.execute(
            update(Chainer).where(Chainer.id == chainer.id).values(status=ChainerStatus.SUSPENDED)
        )
        await db_session.commit()

        response = await client.post("/payouts", json=withdrawal_body(chainer), headers=CHAINER_HEADERS)

        assert response.status_code == 403


# ============================================================================
# REQUEST LOGGING TESTS
# ============================================================================

class TestRequestIds:
    """Test request id propagation"""

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client, make_campaign):
        campaign = await make_campaign()

        response = await client.get(f"/campaigns/{campaign.id}/availability", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_request_id_generated(self, client, make_campaign):
        campaign = await make_campaign()

        response = await client.get(f"/campaigns/{campaign.id}/availability")

        assert len(response.headers["X-Request-ID"]) == 32

    @pytest.mark.asyncio
    async def test_error_responses_carry_request_id(self, client, test_db):
        response = await client.get(f"/campaigns/{uuid.uuid4()}/availability", headers={"X-Request-ID": "req-404"})

        assert response.status_code == 404
        assert response.headers["X-Request-ID"] == "req-404"
