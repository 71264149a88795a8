"""
User Resolver
=============

Links a billing transaction to an application user.
"""

import logging
from typing import Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import Subscription

logger = logging.getLogger(__name__)


class UserResolver:
    """
    Resolution order:

    1. a row with a user whose ``linking_token`` matches exactly;
    2. any row for the same ``original_transaction_id`` that has a user;
    3. nothing.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(
        self,
        linking_token: Optional[str],
        original_transaction_id: Optional[str],
    ) -> Optional[uuid.UUID]:
        if linking_token:
            user_id = await self._first_user(Subscription.linking_token == linking_token)
            if user_id is not None:
                return user_id

        if original_transaction_id:
            user_id = await self._first_user(
                Subscription.original_transaction_id == original_transaction_id
            )
            if user_id is not None:
                return user_id

        logger.info(
            "No user for linking_token=%s original_transaction_id=%s",
            linking_token,
            original_transaction_id,
        )
        return None

    async def _first_user(self, condition) -> Optional[uuid.UUID]:
        stmt = (
            select(Subscription.user_id)
            .where(condition, Subscription.user_id.is_not(None))
            .order_by(Subscription.created_at)
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
