"""
Entitlement Query
=================

Read side used by the rest of the app: "does this user have premium?"
and "what is their current subscription?".
"""

import logging
from typing import Union
import uuid

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import PREMIUM_STATUSES, Subscription, SubscriptionStatus
from app.schemas.subscription import SubscriptionSummary
from app.services.cache import EntitlementCache
from app.utils.helpers import ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Statuses a user can still be "on", best first
CURRENT_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.IN_GRACE_PERIOD,
    SubscriptionStatus.IN_BILLING_RETRY,
)


class _NoSubscription:
    """Marker for "user has no current subscription"."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NONE"


NONE = _NoSubscription()

_NONE_MARKER = {"none": True}


def summary_is_premium(summary: SubscriptionSummary) -> bool:
    """Re-evaluate premium access against the clock (cached summaries age)."""
    if summary.status not in PREMIUM_STATUSES:
        return False
    expires = ensure_utc(summary.expires_date)
    return expires is None or expires > utc_now()


class EntitlementService:
    """Service for entitlement lookups."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def is_premium(self, user_id: uuid.UUID) -> bool:
        """
        True if the user has an active or grace-period subscription that
        has not yet expired.

        A single indexed ``SELECT ... LIMIT 1``.
        """
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(PREMIUM_STATUSES),
                or_(
                    Subscription.expires_date.is_(None),
                    Subscription.expires_date > utc_now(),
                ),
            )
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def get_subscription(
        self,
        user_id: uuid.UUID,
    ) -> Union[SubscriptionSummary, _NoSubscription]:
        """
        Best current subscription for a user.

        Picks among active, grace-period and billing-retry rows the one
        expiring last. Cached in Redis when configured.

        Returns:
            SubscriptionSummary, or ``NONE`` when the user has no current
            subscription.
        """
        cached = await EntitlementCache.load(user_id)
        if cached == _NONE_MARKER:
            return NONE
        if cached is not None:
            summary = SubscriptionSummary.model_validate(cached)
            summary.is_premium = summary_is_premium(summary)
            return summary

        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(CURRENT_STATUSES),
            )
            .order_by(
                Subscription.expires_date.desc().nulls_first(),
                Subscription.updated_at.desc(),
            )
            .limit(1)
        )
        result = await self.db.execute(stmt)
        subscription = result.scalar_one_or_none()

        if subscription is None:
            await EntitlementCache.store(user_id, _NONE_MARKER)
            return NONE

        summary = SubscriptionSummary.model_validate(subscription)
        summary.is_premium = summary_is_premium(summary)
        await EntitlementCache.store(user_id, summary.model_dump(mode="json"))
        return summary
