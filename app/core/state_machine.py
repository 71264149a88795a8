"""
Subscription State Machine
==========================

Legal status transitions and the event kinds allowed to cause them.

Delivery is at-least-once and unordered, so every write is checked
against the stored status. Anything not listed here is rejected.
"""

from typing import Optional

from app.models.subscription import EventKind, SubscriptionStatus

S = SubscriptionStatus
K = EventKind

# Kinds that keep a live subscription in the same state while refreshing
# dates or renewal preferences.
_REFRESH_KINDS = frozenset({K.RENEWAL_PREFERENCE, K.PLAN_CHANGE})
_PURCHASE_KINDS = frozenset({K.PURCHASE, K.RESUBSCRIBE, K.REACTIVATION})
_REVOKE_KINDS = frozenset({K.REFUND, K.REVOKE})

# (current, proposed) -> allowed event kinds
TRANSITIONS: dict[tuple[SubscriptionStatus, SubscriptionStatus], frozenset[EventKind]] = {
    # First purchase / offer redemption
    (S.UNKNOWN, S.ACTIVE): _PURCHASE_KINDS,

    (S.ACTIVE, S.ACTIVE): frozenset({
        K.RENEWAL,
        K.PURCHASE,
        K.REACTIVATION,
        K.RENEWAL_EXTENDED,
        K.REFUND_REVERSED,
    }) | _REFRESH_KINDS,
    (S.ACTIVE, S.IN_GRACE_PERIOD): frozenset({K.BILLING_ISSUE, K.GRACE_PERIOD_STARTED}),
    (S.ACTIVE, S.IN_BILLING_RETRY): frozenset({K.BILLING_ISSUE}),
    (S.ACTIVE, S.EXPIRED): frozenset({K.EXPIRATION}),

    (S.IN_GRACE_PERIOD, S.IN_GRACE_PERIOD): frozenset({
        K.BILLING_ISSUE,
        K.GRACE_PERIOD_STARTED,
    }) | _REFRESH_KINDS,
    (S.IN_GRACE_PERIOD, S.ACTIVE): frozenset({K.RENEWAL, K.BILLING_RECOVERY}),
    (S.IN_GRACE_PERIOD, S.IN_BILLING_RETRY): frozenset({K.GRACE_PERIOD_EXPIRED, K.BILLING_ISSUE}),

    (S.IN_BILLING_RETRY, S.IN_BILLING_RETRY): frozenset({
        K.BILLING_ISSUE,
        K.GRACE_PERIOD_EXPIRED,
    }) | _REFRESH_KINDS,
    (S.IN_BILLING_RETRY, S.ACTIVE): frozenset({K.RENEWAL, K.BILLING_RECOVERY}),
    (S.IN_BILLING_RETRY, S.EXPIRED): frozenset({K.EXPIRATION}),

    (S.EXPIRED, S.EXPIRED): frozenset({K.EXPIRATION, K.RENEWAL_PREFERENCE}),
    # Resubscription is a fresh purchase on the same lineage
    (S.EXPIRED, S.ACTIVE): _PURCHASE_KINDS,

    # Refunds and administrative revokes; revoked absorbs repeats
    (S.ACTIVE, S.REVOKED): _REVOKE_KINDS,
    (S.IN_GRACE_PERIOD, S.REVOKED): _REVOKE_KINDS,
    (S.IN_BILLING_RETRY, S.REVOKED): _REVOKE_KINDS,
    (S.EXPIRED, S.REVOKED): _REVOKE_KINDS,
    (S.REVOKED, S.REVOKED): _REVOKE_KINDS,
}

# Partial order used to refuse regressions regardless of the table above.
STATUS_RANK: dict[SubscriptionStatus, int] = {
    S.UNKNOWN: 0,
    S.ACTIVE: 1,
    S.IN_GRACE_PERIOD: 1,
    S.IN_BILLING_RETRY: 1,
    S.EXPIRED: 1,
    S.REVOKED: 2,
}


def is_regression(current: SubscriptionStatus, proposed: SubscriptionStatus) -> bool:
    """True if ``proposed`` sits lower than ``current`` in the partial order."""
    if current == S.REVOKED:
        return proposed != S.REVOKED
    return STATUS_RANK[proposed] < STATUS_RANK[current]


def validate(
    current_status: SubscriptionStatus,
    proposed_status: SubscriptionStatus,
    event_kind: EventKind,
) -> bool:
    """
    Decide whether ``event_kind`` may move a subscription from
    ``current_status`` to ``proposed_status``.

    Pure function: no I/O, no side effects. Unknown combinations fail
    closed.
    """
    try:
        current = SubscriptionStatus(current_status)
        proposed = SubscriptionStatus(proposed_status)
        kind = EventKind(event_kind)
    except ValueError:
        return False

    if is_regression(current, proposed):
        return False

    allowed = TRANSITIONS.get((current, proposed))
    return allowed is not None and kind in allowed


def explain(
    current_status: SubscriptionStatus,
    proposed_status: SubscriptionStatus,
    event_kind: EventKind,
) -> Optional[str]:
    """Human-readable reason a transition is rejected, or None if it is legal."""
    if validate(current_status, proposed_status, event_kind):
        return None
    current = getattr(current_status, "value", current_status)
    proposed = getattr(proposed_status, "value", proposed_status)
    kind = getattr(event_kind, "value", event_kind)
    try:
        if is_regression(SubscriptionStatus(current), SubscriptionStatus(proposed)):
            return f"{kind} would regress status {current} -> {proposed}"
    except ValueError:
        return f"unrecognized status in {current} -> {proposed}"
    return f"{kind} is not a legal transition {current} -> {proposed}"
