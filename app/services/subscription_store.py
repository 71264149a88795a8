"""
Subscription Store
==================

Canonical per-transaction entitlement record.

Writes go through a single conflict-key upsert on
``(platform, original_transaction_id)``. Callers that validated a
transition against a snapshot pass it back as ``expected`` so the write
only lands if nobody else changed the row in between.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConcurrentUpdateError
from app.db.dialect import upsert_insert
from app.models.subscription import (
    Platform,
    Subscription,
    SubscriptionEnvironment,
    SubscriptionStatus,
)
from app.utils.helpers import ensure_utc, utc_now

logger = logging.getLogger(__name__)

CONFLICT_KEY = ["platform", "original_transaction_id"]

# Columns a caller may write
UPSERT_FIELDS = frozenset({
    "user_id",
    "linking_token",
    "status",
    "product_id",
    "bundle_id",
    "purchase_date",
    "original_purchase_date",
    "expires_date",
    "auto_renew_status",
    "auto_renew_product_id",
    "environment",
    "last_event_signed_at",
})

# Once set these are never overwritten by a later write
STICKY_FIELDS = frozenset({"user_id", "linking_token"})

MAX_UNGUARDED_ATTEMPTS = 3


@dataclass(frozen=True)
class SubscriptionKey:
    """Conflict key of a subscription record."""

    platform: Platform
    original_transaction_id: str

    def __str__(self) -> str:
        return f"{Platform(self.platform).value}:{self.original_transaction_id}"


def next_updated_at(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Return a timestamp strictly after ``previous``, normally ``now``."""
    now = now or utc_now()
    previous = ensure_utc(previous)
    if previous is not None and previous >= now:
        return previous + timedelta(microseconds=1)
    return now


class SubscriptionStore:
    """Repository for ``subscriptions`` rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, key: SubscriptionKey) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.platform == Platform(key.platform),
                Subscription.original_transaction_id == key.original_transaction_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, key: SubscriptionKey) -> Optional[Subscription]:
        """
        Read the row under a row lock (PostgreSQL; ignored on SQLite).

        The version read here is what ``upsert(expected=...)`` guards on.
        """
        stmt = (
            select(Subscription)
            .where(
                Subscription.platform == Platform(key.platform),
                Subscription.original_transaction_id == key.original_transaction_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(self, key: SubscriptionKey) -> None:
        """Create the row with ``status=unknown`` if it does not exist yet."""
        now = utc_now()
        stmt = (
            upsert_insert(self.db, Subscription)
            .values(
                id=uuid.uuid4(),
                platform=Platform(key.platform),
                original_transaction_id=key.original_transaction_id,
                status=SubscriptionStatus.UNKNOWN,
                auto_renew_status=False,
                environment=SubscriptionEnvironment.PRODUCTION,
                version=1,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=CONFLICT_KEY)
        )
        await self.db.execute(stmt)

    async def upsert(
        self,
        key: SubscriptionKey,
        fields: dict[str, Any],
        expected: Optional[Subscription] = None,
    ) -> uuid.UUID:
        """
        Insert or update the record for ``key``.

        Args:
            key: Conflict key.
            fields: Column values to write. ``user_id`` and
                ``linking_token`` are only filled when currently null.
            expected: Snapshot the caller validated against. The update
                only applies while the stored version still matches.

        Returns:
            The subscription id.

        Raises:
            ConcurrentUpdateError: The row changed since ``expected`` was read.
        """
        unknown = set(fields) - UPSERT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported subscription fields: {sorted(unknown)}")

        if expected is not None:
            subscription_id = await self._write(key, fields, expected)
            if subscription_id is None:
                raise ConcurrentUpdateError(
                    f"Subscription {key} changed since version {expected.version}",
                    expected_version=expected.version,
                )
            return subscription_id

        # Unguarded writes still need a snapshot for monotonic updated_at
        for _ in range(MAX_UNGUARDED_ATTEMPTS):
            snapshot = await self.get(key)
            subscription_id = await self._write(key, fields, snapshot)
            if subscription_id is not None:
                return subscription_id

        raise ConcurrentUpdateError(f"Subscription {key} kept changing during upsert")

    async def link(
        self,
        key: SubscriptionKey,
        user_id: uuid.UUID,
        linking_token: Optional[str] = None,
        **fields: Any,
    ) -> uuid.UUID:
        """Attach a user (and linking token) to a transaction without touching status."""
        if "status" in fields:
            raise ValueError("link() cannot change subscription status")
        values = {"user_id": user_id, **fields}
        if linking_token:
            values["linking_token"] = linking_token
        return await self.upsert(key, values)

    async def _write(
        self,
        key: SubscriptionKey,
        fields: dict[str, Any],
        snapshot: Optional[Subscription],
    ) -> Optional[uuid.UUID]:
        now = utc_now()
        insert_values = {
            "status": SubscriptionStatus.UNKNOWN,
            "auto_renew_status": False,
            "environment": SubscriptionEnvironment.PRODUCTION,
            **fields,
            "id": uuid.uuid4(),
            "platform": Platform(key.platform),
            "original_transaction_id": key.original_transaction_id,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }

        stmt = upsert_insert(self.db, Subscription).values(**insert_values)
        excluded = stmt.excluded

        set_: dict[str, Any] = {}
        for name in fields:
            if name in STICKY_FIELDS:
                set_[name] = func.coalesce(getattr(Subscription, name), getattr(excluded, name))
            else:
                set_[name] = getattr(excluded, name)
        set_["version"] = Subscription.version + 1
        set_["updated_at"] = next_updated_at(
            snapshot.updated_at if snapshot is not None else None, now
        )

        where = None
        if snapshot is not None:
            where = Subscription.version == snapshot.version

        stmt = stmt.on_conflict_do_update(
            index_elements=CONFLICT_KEY,
            set_=set_,
            where=where,
        ).returning(Subscription.id)

        result = await self.db.execute(stmt)
        subscription_id = result.scalar_one_or_none()
        if subscription_id is not None:
            logger.debug("Upserted subscription %s", key)
        return subscription_id
