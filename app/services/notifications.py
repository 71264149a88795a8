"""
Notification Mapping
====================

Turns a provider notification ``(platform, type, subtype)`` into a
provider-independent ``EventKind`` and the status it proposes.

Each platform contributes one mapper; the lifecycle processor and the
metrics job only ever see ``NotificationMapping``.
"""

from dataclasses import dataclass
from typing import ClassVar, Optional

from app.models.subscription import EventKind, Platform, SubscriptionStatus

K = EventKind
S = SubscriptionStatus


@dataclass(frozen=True)
class NotificationMapping:
    """
    Normalized meaning of a notification.

    ``proposed_status`` of ``None`` means "keep the current status and
    refresh the other fields".
    """

    kind: EventKind
    proposed_status: Optional[SubscriptionStatus]

    @property
    def is_informational(self) -> bool:
        return self.kind == K.INFORMATIONAL

    @property
    def is_recognized(self) -> bool:
        return self.kind != K.UNRECOGNIZED


INFORMATIONAL = NotificationMapping(K.INFORMATIONAL, None)
UNRECOGNIZED = NotificationMapping(K.UNRECOGNIZED, None)


class NotificationMapper:
    """Base mapper: a table keyed by ``(type, subtype)`` with ``(type, None)`` fallback."""

    platform: ClassVar[Platform]
    TABLE: ClassVar[dict[tuple[str, Optional[str]], NotificationMapping]] = {}
    IGNORED: ClassVar[frozenset[str]] = frozenset()

    def normalize_type(self, notification_type: str) -> str:
        return notification_type.strip().upper()

    def map(self, notification_type: str, subtype: Optional[str] = None) -> NotificationMapping:
        ntype = self.normalize_type(notification_type)
        nsub = subtype.strip().upper() if subtype else None

        if ntype in self.IGNORED:
            return INFORMATIONAL

        mapping = self.TABLE.get((ntype, nsub))
        if mapping is None:
            mapping = self.TABLE.get((ntype, None))
        return mapping or UNRECOGNIZED


class AppleNotificationMapper(NotificationMapper):
    """App Store Server Notifications V2."""

    platform = Platform.APPLE

    TABLE = {
        ("SUBSCRIBED", "INITIAL_BUY"): NotificationMapping(K.PURCHASE, S.ACTIVE),
        ("SUBSCRIBED", "RESUBSCRIBE"): NotificationMapping(K.RESUBSCRIBE, S.ACTIVE),
        ("SUBSCRIBED", None): NotificationMapping(K.PURCHASE, S.ACTIVE),
        ("OFFER_REDEEMED", None): NotificationMapping(K.PURCHASE, S.ACTIVE),
        ("DID_RENEW", "BILLING_RECOVERY"): NotificationMapping(K.BILLING_RECOVERY, S.ACTIVE),
        ("DID_RENEW", None): NotificationMapping(K.RENEWAL, S.ACTIVE),
        ("DID_FAIL_TO_RENEW", "GRACE_PERIOD"): NotificationMapping(
            K.GRACE_PERIOD_STARTED, S.IN_GRACE_PERIOD
        ),
        ("DID_FAIL_TO_RENEW", None): NotificationMapping(K.BILLING_ISSUE, S.IN_BILLING_RETRY),
        ("GRACE_PERIOD_EXPIRED", None): NotificationMapping(
            K.GRACE_PERIOD_EXPIRED, S.IN_BILLING_RETRY
        ),
        ("EXPIRED", None): NotificationMapping(K.EXPIRATION, S.EXPIRED),
        ("REFUND", None): NotificationMapping(K.REFUND, S.REVOKED),
        ("REVOKE", None): NotificationMapping(K.REVOKE, S.REVOKED),
        ("REFUND_REVERSED", None): NotificationMapping(K.REFUND_REVERSED, S.ACTIVE),
        ("RENEWAL_EXTENDED", None): NotificationMapping(K.RENEWAL_EXTENDED, S.ACTIVE),
        ("DID_CHANGE_RENEWAL_STATUS", None): NotificationMapping(K.RENEWAL_PREFERENCE, None),
        ("DID_CHANGE_RENEWAL_PREF", None): NotificationMapping(K.PLAN_CHANGE, None),
        ("PRICE_INCREASE", None): NotificationMapping(K.RENEWAL_PREFERENCE, None),
    }
    IGNORED = frozenset({
        "TEST",
        "CONSUMPTION_REQUEST",
        "EXTERNAL_PURCHASE_TOKEN",
        "REFUND_DECLINED",
        "RENEWAL_EXTENSION",
    })


class GooglePlayNotificationMapper(NotificationMapper):
    """Google Play Real-time Developer Notifications (subscriptionNotification)."""

    platform = Platform.GOOGLE_PLAY

    # RTDN sends numeric notificationType codes
    CODES: ClassVar[dict[str, str]] = {
        "1": "SUBSCRIPTION_RECOVERED",
        "2": "SUBSCRIPTION_RENEWED",
        "3": "SUBSCRIPTION_CANCELED",
        "4": "SUBSCRIPTION_PURCHASED",
        "5": "SUBSCRIPTION_ON_HOLD",
        "6": "SUBSCRIPTION_IN_GRACE_PERIOD",
        "7": "SUBSCRIPTION_RESTARTED",
        "8": "SUBSCRIPTION_PRICE_CHANGE_CONFIRMED",
        "9": "SUBSCRIPTION_DEFERRED",
        "10": "SUBSCRIPTION_PAUSED",
        "11": "SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED",
        "12": "SUBSCRIPTION_REVOKED",
        "13": "SUBSCRIPTION_EXPIRED",
        "20": "SUBSCRIPTION_PENDING_PURCHASE_CANCELED",
    }

    TABLE = {
        ("SUBSCRIPTION_PURCHASED", None): NotificationMapping(K.PURCHASE, S.ACTIVE),
        ("SUBSCRIPTION_RENEWED", None): NotificationMapping(K.RENEWAL, S.ACTIVE),
        ("SUBSCRIPTION_RECOVERED", None): NotificationMapping(K.BILLING_RECOVERY, S.ACTIVE),
        ("SUBSCRIPTION_RESTARTED", None): NotificationMapping(K.REACTIVATION, S.ACTIVE),
        ("SUBSCRIPTION_DEFERRED", None): NotificationMapping(K.RENEWAL_EXTENDED, S.ACTIVE),
        ("SUBSCRIPTION_IN_GRACE_PERIOD", None): NotificationMapping(
            K.GRACE_PERIOD_STARTED, S.IN_GRACE_PERIOD
        ),
        ("SUBSCRIPTION_ON_HOLD", None): NotificationMapping(K.BILLING_ISSUE, S.IN_BILLING_RETRY),
        ("SUBSCRIPTION_EXPIRED", None): NotificationMapping(K.EXPIRATION, S.EXPIRED),
        ("SUBSCRIPTION_REVOKED", None): NotificationMapping(K.REVOKE, S.REVOKED),
        # Cancel only turns auto-renew off; expiry arrives separately
        ("SUBSCRIPTION_CANCELED", None): NotificationMapping(K.RENEWAL_PREFERENCE, None),
        ("SUBSCRIPTION_PRICE_CHANGE_CONFIRMED", None): NotificationMapping(
            K.RENEWAL_PREFERENCE, None
        ),
        ("SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED", None): NotificationMapping(
            K.RENEWAL_PREFERENCE, None
        ),
    }
    IGNORED = frozenset({
        "SUBSCRIPTION_PAUSED",
        "SUBSCRIPTION_PENDING_PURCHASE_CANCELED",
        "TEST",
        "TEST_NOTIFICATION",
    })

    def normalize_type(self, notification_type: str) -> str:
        value = notification_type.strip().upper()
        return self.CODES.get(value, value)


class StripeNotificationMapper(NotificationMapper):
    """Stripe billing webhooks (subscription, invoice and charge events)."""

    platform = Platform.STRIPE

    TABLE = {
        ("CUSTOMER.SUBSCRIPTION.CREATED", "RESUBSCRIBE"): NotificationMapping(
            K.RESUBSCRIBE, S.ACTIVE
        ),
        ("CUSTOMER.SUBSCRIPTION.CREATED", None): NotificationMapping(K.PURCHASE, S.ACTIVE),
        ("CUSTOMER.SUBSCRIPTION.RESUMED", None): NotificationMapping(K.REACTIVATION, S.ACTIVE),
        ("CUSTOMER.SUBSCRIPTION.UPDATED", "CANCEL_AT_PERIOD_END"): NotificationMapping(
            K.RENEWAL_PREFERENCE, None
        ),
        ("CUSTOMER.SUBSCRIPTION.UPDATED", None): NotificationMapping(K.PLAN_CHANGE, None),
        ("CUSTOMER.SUBSCRIPTION.PENDING_UPDATE_APPLIED", None): NotificationMapping(
            K.PLAN_CHANGE, None
        ),
        ("CUSTOMER.SUBSCRIPTION.DELETED", None): NotificationMapping(K.EXPIRATION, S.EXPIRED),
        ("INVOICE.PAID", "BILLING_RECOVERY"): NotificationMapping(K.BILLING_RECOVERY, S.ACTIVE),
        ("INVOICE.PAID", None): NotificationMapping(K.RENEWAL, S.ACTIVE),
        ("INVOICE.PAYMENT_FAILED", "GRACE_PERIOD"): NotificationMapping(
            K.GRACE_PERIOD_STARTED, S.IN_GRACE_PERIOD
        ),
        ("INVOICE.PAYMENT_FAILED", None): NotificationMapping(K.BILLING_ISSUE, S.IN_BILLING_RETRY),
        ("INVOICE.PAYMENT_ACTION_REQUIRED", None): NotificationMapping(
            K.BILLING_ISSUE, S.IN_BILLING_RETRY
        ),
        ("CHARGE.REFUNDED", None): NotificationMapping(K.REFUND, S.REVOKED),
    }
    IGNORED = frozenset({
        "CUSTOMER.SUBSCRIPTION.PAUSED",
        "CUSTOMER.SUBSCRIPTION.TRIAL_WILL_END",
        "CUSTOMER.SUBSCRIPTION.PENDING_UPDATE_EXPIRED",
        "INVOICE.FINALIZED",
        "INVOICE.UPCOMING",
    })


MAPPERS: dict[Platform, NotificationMapper] = {
    Platform.APPLE: AppleNotificationMapper(),
    Platform.GOOGLE_PLAY: GooglePlayNotificationMapper(),
    Platform.STRIPE: StripeNotificationMapper(),
}


def map_notification(
    platform: Platform,
    notification_type: str,
    subtype: Optional[str] = None,
) -> NotificationMapping:
    """Map a provider notification to its normalized kind and proposed status."""
    return MAPPERS[Platform(platform)].map(notification_type, subtype)
