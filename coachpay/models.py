import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text

from coachpay.database import Base


def _uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)                # minor units
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(String, default="pending", nullable=False)  # pending | completed | failed
    payment_method = Column(String)
    payment_intent_id = Column(String, index=True)
    description = Column(Text)
    metadata_ = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True))


class PaymentHistory(Base):
    __tablename__ = "payment_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)                # minor units
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(String, nullable=False)
    payment_method = Column(String)
    stripe_payment_id = Column(String)
    description = Column(Text)
    metadata_ = Column("metadata", JSON, default=dict)       # checkout_session_id, plan_id, invoice_id...
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class SubscriptionRecord(Base):
    __tablename__ = "user_subscription_purchases"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    stripe_subscription_id = Column(String, unique=True, index=True, nullable=False)
    stripe_customer_id = Column(String, index=True)
    plan_id = Column(String)
    quiz_result_id = Column(String)
    status = Column(String, nullable=False)                 # Stripe subscription status
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    current_period_start = Column(DateTime(timezone=True))
    current_period_end = Column(DateTime(timezone=True))
    metadata_ = Column("metadata", JSON, default=dict)
    last_event_at = Column(Integer)                          # Stripe event "created" epoch
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class InvoiceRecord(Base):
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, index=True)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String)
    amount = Column(Integer, nullable=False)                # minor units
    currency = Column(String(3), default="usd", nullable=False)
    description = Column(Text)
    status = Column(String, default="draft")
    stripe_invoice_id = Column(String, unique=True)
    payment_link = Column(String)
    issued_date = Column(DateTime(timezone=True))
    due_date = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class AccountBalance(Base):
    __tablename__ = "payment_balance"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, unique=True, nullable=False)
    balance = Column(Numeric(12, 2), default=0, nullable=False)  # major units (dollars)
    currency = Column(String(3), default="usd", nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class StripeCustomer(Base):
    __tablename__ = "stripe_customers"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    stripe_customer_id = Column(String, unique=True, nullable=False)
    email = Column(String, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class UserNotification(Base):
    __tablename__ = "user_notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    notification_type = Column(String, default="info", nullable=False)  # success | info | error
    action_url = Column(String)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class AdminNotification(Base):
    __tablename__ = "admin_notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    notification_type = Column(String, default="info", nullable=False)
    source = Column(String)
    action_url = Column(String)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class AddonPurchase(Base):
    __tablename__ = "user_addon_purchases"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    addon_id = Column(String, nullable=False)
    subscription_id = Column(String, index=True)
    status = Column(String, default="active", nullable=False)
    metadata_ = Column("metadata", JSON, default=dict)
    purchase_date = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class QuizResult(Base):
    __tablename__ = "custom_plan_results"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    selected_plan_id = Column(String)
    selected_plan_name = Column(String)
    is_purchased = Column(Boolean, default=False, nullable=False)
    purchase_date = Column(DateTime(timezone=True))


class ProcessedEvent(Base):
    """Stripe webhook events already applied, for redelivery dedup."""

    __tablename__ = "stripe_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(128), nullable=False)
    received_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
