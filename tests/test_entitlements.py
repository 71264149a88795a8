"""
Entitlement Query Tests
=======================
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
import uuid

import pytest

from app.models.subscription import Platform, SubscriptionStatus
from app.schemas.subscription import SubscriptionSummary
from app.services.entitlements import NONE, EntitlementService, summary_is_premium
from tests.factories import seed_subscription

USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def _days(n: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=n)


class TestIsPremium:

    @pytest.mark.asyncio
    async def test_active_unexpired(self, db_session):
        await seed_subscription(db_session, user_id=USER_ID, expires_date=_days(10))
        assert await EntitlementService(db_session).is_premium(USER_ID) is True

    @pytest.mark.asyncio
    async def test_active_without_expiry(self, db_session):
        await seed_subscription(db_session, user_id=USER_ID)
        assert await EntitlementService(db_session).is_premium(USER_ID) is True

    @pytest.mark.asyncio
    async def test_grace_period_counts(self, db_session):
        await seed_subscription(
            db_session,
            user_id=USER_ID,
            status=SubscriptionStatus.IN_GRACE_PERIOD,
            expires_date=_days(1),
        )
        assert await EntitlementService(db_session).is_premium(USER_ID) is True

    @pytest.mark.asyncio
    async def test_past_expiry_is_not_premium(self, db_session):
        await seed_subscription(db_session, user_id=USER_ID, expires_date=_days(-1))
        assert await EntitlementService(db_session).is_premium(USER_ID) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [
            SubscriptionStatus.IN_BILLING_RETRY,
            SubscriptionStatus.EXPIRED,
            SubscriptionStatus.REVOKED,
            SubscriptionStatus.UNKNOWN,
        ],
    )
    async def test_other_statuses_are_not_premium(self, db_session, status):
        await seed_subscription(
            db_session, user_id=USER_ID, status=status, expires_date=_days(10)
        )
        assert await EntitlementService(db_session).is_premium(USER_ID) is False

    @pytest.mark.asyncio
    async def test_any_premium_row_is_enough(self, db_session):
        await seed_subscription(
            db_session,
            user_id=USER_ID,
            original_transaction_id="old",
            status=SubscriptionStatus.EXPIRED,
        )
        await seed_subscription(
            db_session,
            user_id=USER_ID,
            platform=Platform.STRIPE,
            original_transaction_id="new",
            expires_date=_days(30),
        )
        assert await EntitlementService(db_session).is_premium(USER_ID) is True

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session):
        assert await EntitlementService(db_session).is_premium(uuid.uuid4()) is False


class TestGetSubscription:

    @pytest.mark.asyncio
    async def test_none_without_current_subscription(self, db_session):
        await seed_subscription(
            db_session, user_id=USER_ID, status=SubscriptionStatus.EXPIRED
        )
        assert await EntitlementService(db_session).get_subscription(USER_ID) is NONE

    @pytest.mark.asyncio
    async def test_picks_latest_expiry(self, db_session):
        await seed_subscription(
            db_session,
            user_id=USER_ID,
            original_transaction_id="short",
            expires_date=_days(3),
        )
        await seed_subscription(
            db_session,
            user_id=USER_ID,
            original_transaction_id="long",
            status=SubscriptionStatus.IN_BILLING_RETRY,
            expires_date=_days(300),
        )

        summary = await EntitlementService(db_session).get_subscription(USER_ID)

        assert summary.original_transaction_id == "long"
        assert summary.status == SubscriptionStatus.IN_BILLING_RETRY
        assert summary.is_premium is False

    @pytest.mark.asyncio
    async def test_summary_is_cached(self, db_session):
        await seed_subscription(db_session, user_id=USER_ID, expires_date=_days(10))

        with patch("app.services.entitlements.EntitlementCache") as cache:
            cache.load = AsyncMock(return_value=None)
            cache.store = AsyncMock(return_value=True)
            summary = await EntitlementService(db_session).get_subscription(USER_ID)

        assert summary.is_premium is True
        user_id, value = cache.store.await_args.args
        assert user_id == USER_ID
        assert value["original_transaction_id"] == "txn-1000"

    @pytest.mark.asyncio
    async def test_cache_hit_skips_database(self, db_session):
        cached = SubscriptionSummary(
            id=uuid.uuid4(),
            user_id=USER_ID,
            platform=Platform.APPLE,
            original_transaction_id="cached-txn",
            status=SubscriptionStatus.ACTIVE,
            expires_date=_days(5),
            is_premium=True,
        ).model_dump(mode="json")

        with patch("app.services.entitlements.EntitlementCache") as cache:
            cache.load = AsyncMock(return_value=cached)
            summary = await EntitlementService(db_session).get_subscription(USER_ID)

        assert summary.original_transaction_id == "cached-txn"
        assert summary.is_premium is True

    @pytest.mark.asyncio
    async def test_cached_none_marker(self, db_session):
        with patch("app.services.entitlements.EntitlementCache") as cache:
            cache.load = AsyncMock(return_value={"none": True})
            assert await EntitlementService(db_session).get_subscription(USER_ID) is NONE


class TestSummaryIsPremium:

    def _summary(self, status, expires_date):
        return SubscriptionSummary(
            id=uuid.uuid4(),
            platform=Platform.APPLE,
            original_transaction_id="t",
            status=status,
            expires_date=expires_date,
        )

    def test_cached_summary_ages_out(self):
        summary = self._summary(SubscriptionStatus.ACTIVE, _days(-1))
        assert summary_is_premium(summary) is False

    def test_open_ended(self):
        summary = self._summary(SubscriptionStatus.IN_GRACE_PERIOD, None)
        assert summary_is_premium(summary) is True

    def test_none_is_falsy(self):
        assert not NONE
        assert repr(NONE) == "NONE"
