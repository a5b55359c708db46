"""
Shared writes against the payments tables.

Every "at most one row" rule is backed by a unique constraint; the helpers
here read first, then insert inside a savepoint and fall back to the row
that won when the insert collides.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coachpay.lifecycle import PaymentStatus, payment_transition
from coachpay.models import (
    AccountBalance,
    AdminNotification,
    PaymentHistory,
    PaymentRecord,
    ProcessedEvent,
    StripeCustomer,
    UserNotification,
    utcnow,
)
from coachpay.money import MinorUnits

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    pass


class CurrencyMismatchError(ValueError):
    pass


def insert_if_absent(db: Session, model, lookup: dict, **values):
    """Return (row, created) for the row matching ``lookup``."""
    query = select(model).filter_by(**lookup)
    existing = db.scalar(query)
    if existing is not None:
        return existing, False

    row = model(**lookup, **values)
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        existing = db.scalar(query)
        if existing is None:
            raise
        logger.info(f"Concurrent insert on {model.__tablename__} {lookup}; using existing row")
        return existing, False
    return row, True


def mark_event_processed(db: Session, event_id: str, event_type: str) -> bool:
    """Record a webhook event id. False means it was already applied."""
    _, created = insert_if_absent(db, ProcessedEvent, {"event_id": event_id}, event_type=event_type)
    return created


def credit_balance(db: Session, user_id: str, amount: MinorUnits, currency: str = "usd") -> Decimal:
    """Add ``amount`` to the user's balance with a single UPDATE and return the new balance."""
    currency = (currency or "usd").lower()
    held = db.scalar(select(AccountBalance.currency).where(AccountBalance.user_id == user_id))
    if held is not None and held.lower() != currency:
        raise CurrencyMismatchError(f"Balance for user {user_id} is held in {held}, cannot credit {currency}")

    delta = MinorUnits(amount).to_major(currency)
    increment = (
        update(AccountBalance)
        .where(AccountBalance.user_id == user_id, func.lower(AccountBalance.currency) == currency)
        .values(balance=AccountBalance.balance + delta, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )

    if db.execute(increment).rowcount == 0:
        try:
            with db.begin_nested():
                db.add(AccountBalance(user_id=user_id, balance=delta, currency=currency))
                db.flush()
        except IntegrityError:
            # Another request created the row first
            if db.execute(increment).rowcount == 0:
                raise CurrencyMismatchError(f"Balance for user {user_id} is not held in {currency}")

    balance = db.scalar(select(AccountBalance.balance).where(AccountBalance.user_id == user_id))
    logger.info(f"Balance for user {user_id} changed by {delta}; now {balance}")
    return balance


def get_balance(db: Session, user_id: str) -> Decimal:
    balance = db.scalar(select(AccountBalance.balance).where(AccountBalance.user_id == user_id))
    return balance if balance is not None else Decimal("0.00")


def transition_payment(
    db: Session,
    payment_id: str,
    status,
    payment_method: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
):
    """
    Move a PaymentRecord to ``status``.

    Returns (payment, entered_completed). ``entered_completed`` is True only
    on the first move into completed, which is when a credit may be applied.
    """
    payment = db.get(PaymentRecord, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")

    previous = payment.status
    target = payment_transition(previous, status)

    payment.status = target.value
    if payment_method:
        payment.payment_method = payment_method
    if payment_intent_id:
        payment.payment_intent_id = payment_intent_id

    entered_completed = target == PaymentStatus.COMPLETED and previous != PaymentStatus.COMPLETED.value
    if entered_completed:
        payment.completed_at = utcnow()
    return payment, entered_completed


def record_history(
    db: Session,
    user_id: str,
    amount: MinorUnits,
    status: str,
    currency: str = "usd",
    description: Optional[str] = None,
    payment_method: Optional[str] = None,
    stripe_payment_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> PaymentHistory:
    row = PaymentHistory(
        user_id=user_id,
        amount=int(amount),
        currency=currency,
        status=status,
        description=description,
        payment_method=payment_method,
        stripe_payment_id=stripe_payment_id,
        metadata_=metadata or {},
    )
    db.add(row)
    return row


def find_checkout_history(db: Session, session_id: str) -> Optional[PaymentHistory]:
    return db.scalar(
        select(PaymentHistory)
        .where(PaymentHistory.metadata_["checkout_session_id"].as_string() == session_id)
        .order_by(PaymentHistory.created_at.desc())
        .limit(1)
    )


def customer_id_for_user(db: Session, user_id: str) -> Optional[str]:
    return db.scalar(
        select(StripeCustomer.stripe_customer_id)
        .where(StripeCustomer.user_id == user_id)
        .order_by(StripeCustomer.created_at.desc())
        .limit(1)
    )


def user_for_customer(db: Session, stripe_customer_id: str) -> Optional[str]:
    return db.scalar(
        select(StripeCustomer.user_id).where(StripeCustomer.stripe_customer_id == stripe_customer_id)
    )


def record_customer_mapping(db: Session, user_id: str, stripe_customer_id: str, email: Optional[str] = None):
    mapping, created = insert_if_absent(
        db,
        StripeCustomer,
        {"stripe_customer_id": stripe_customer_id},
        user_id=user_id,
        email=email,
    )
    if not created and mapping.user_id != user_id:
        logger.warning(
            f"Stripe customer {stripe_customer_id} already mapped to user {mapping.user_id}, not {user_id}"
        )
    return mapping


def notify_user(
    db: Session,
    user_id: str,
    title: str,
    message: str,
    notification_type: str = "info",
    action_url: Optional[str] = None,
) -> UserNotification:
    notification = UserNotification(
        user_id=user_id,
        title=title,
        message=message,
        notification_type=notification_type,
        action_url=action_url,
    )
    db.add(notification)
    return notification


def notify_admins(
    db: Session,
    title: str,
    message: str,
    notification_type: str = "info",
    action_url: Optional[str] = None,
    source: str = "stripe-webhook",
) -> AdminNotification:
    notification = AdminNotification(
        title=title,
        message=message,
        notification_type=notification_type,
        source=source,
        action_url=action_url,
    )
    db.add(notification)
    return notification
