"""
Status state machines for payments and subscriptions.

Stripe delivers webhook events at least once and in no guaranteed order,
so every status write goes through an explicit transition table instead of
overwriting the stored value.
"""

from enum import Enum


class InvalidTransitionError(Exception):
    """Raised when a status change is not allowed by the lifecycle."""

    def __init__(self, kind: str, current: str, target: str):
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {kind} from '{current}' to '{target}'")


class PaymentStatus(str, Enum):
    """Status of a payment or payment-history row."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    """Mirrors Stripe's subscription status enum."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAUSED = "paused"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return not SUBSCRIPTION_TRANSITIONS[self]


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.COMPLETED},
    PaymentStatus.COMPLETED: set(),
}

SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.INCOMPLETE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.TRIALING: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.PAST_DUE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.UNPAID: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.PAUSED: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.CANCELED: set(),
    SubscriptionStatus.INCOMPLETE_EXPIRED: set(),
}


def _check(kind, table, enum_cls, current, target):
    try:
        current_status = enum_cls(current)
        target_status = enum_cls(target)
    except ValueError:
        raise InvalidTransitionError(kind, str(current), str(target))

    if current_status == target_status:
        return target_status
    if target_status not in table[current_status]:
        raise InvalidTransitionError(kind, current_status.value, target_status.value)
    return target_status


def payment_transition(current, target) -> PaymentStatus:
    """Validate a payment status change and return the target status."""
    return _check("payment", PAYMENT_TRANSITIONS, PaymentStatus, current, target)


def subscription_transition(current, target) -> SubscriptionStatus:
    """Validate a subscription status change and return the target status."""
    return _check("subscription", SUBSCRIPTION_TRANSITIONS, SubscriptionStatus, current, target)
