"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from app.schemas.common import ErrorDetail, ErrorResponse
from app.schemas.subscription import (
    CronRunResponse,
    DailyMetricRow,
    DeadLetterEntryView,
    DLQReplayResponse,
    DLQResolveRequest,
    DLQSummary,
    DrainResult,
    LinkSubscriptionRequest,
    LinkSubscriptionResponse,
    PremiumResponse,
    PurgeResult,
    SubscriptionHealth,
    SubscriptionLookupResponse,
    SubscriptionSummary,
    TransactionPayload,
    WebhookAck,
    WebhookEnvelope,
)

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "CronRunResponse",
    "DailyMetricRow",
    "DeadLetterEntryView",
    "DLQReplayResponse",
    "DLQResolveRequest",
    "DLQSummary",
    "DrainResult",
    "LinkSubscriptionRequest",
    "LinkSubscriptionResponse",
    "PremiumResponse",
    "PurgeResult",
    "SubscriptionHealth",
    "SubscriptionLookupResponse",
    "SubscriptionSummary",
    "TransactionPayload",
    "WebhookAck",
    "WebhookEnvelope",
]
