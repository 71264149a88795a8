"""
Subscription API Endpoints
==========================

Entitlement lookups and client-side purchase linking for other services.
"""

import logging
import uuid

from fastapi import APIRouter, Depends

from app.dependencies import DBSession, verify_service_key
from app.schemas.subscription import (
    LinkSubscriptionRequest,
    LinkSubscriptionResponse,
    PremiumResponse,
    SubscriptionLookupResponse,
)
from app.services.entitlements import NONE, EntitlementService
from app.services.lifecycle import LifecycleProcessor

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_service_key)])


@router.post("/link", response_model=LinkSubscriptionResponse)
async def link_subscription(
    request: LinkSubscriptionRequest,
    db: DBSession,
) -> LinkSubscriptionResponse:
    """
    Register which user owns a transaction.

    Called after a client-side purchase so later provider notifications
    (which carry no user) can be attributed. Status is left untouched.
    """
    return await LifecycleProcessor(db).link_subscription(request)


@router.get("/{user_id}", response_model=SubscriptionLookupResponse)
async def get_subscription(user_id: uuid.UUID, db: DBSession) -> SubscriptionLookupResponse:
    """Best current subscription for a user, or ``null`` if none."""
    summary = await EntitlementService(db).get_subscription(user_id)
    if summary is NONE:
        return SubscriptionLookupResponse(user_id=user_id, is_premium=False)
    return SubscriptionLookupResponse(
        user_id=user_id,
        is_premium=summary.is_premium,
        subscription=summary,
    )


@router.get("/{user_id}/premium", response_model=PremiumResponse)
async def get_premium(user_id: uuid.UUID, db: DBSession) -> PremiumResponse:
    return PremiumResponse(
        user_id=user_id,
        is_premium=await EntitlementService(db).is_premium(user_id),
    )
