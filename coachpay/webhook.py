"""
Stripe webhook receiver.

Verifies the signature, then applies each event's writes in a single
transaction together with the event-log row, so a failed event leaves no
trace and is fully reapplied when Stripe redelivers it.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import stripe
from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy import select

from coachpay import config, ledger, stripe_service
from coachpay.database import SessionLocal
from coachpay.lifecycle import (
    InvalidTransitionError,
    PaymentStatus,
    SubscriptionStatus,
    subscription_transition,
)
from coachpay.models import AddonPurchase, PaymentRecord, QuizResult, SubscriptionRecord, utcnow
from coachpay.money import MinorUnits

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe-webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    secret = config.stripe_webhook_secret()
    if not secret:
        logger.error("Missing STRIPE_WEBHOOK_SECRET env var")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing stripe signature")

    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(payload, stripe_signature, secret)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.error.SignatureVerificationError:
        logger.warning("Webhook signature verification failed")
        raise HTTPException(status_code=400, detail="Invalid signature")

    return await run_in_threadpool(process_event, event)


def process_event(event):
    event_type = event["type"]
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Unhandled event type: {event_type}")
        return {"received": True}

    logger.info(f"Processing webhook event: {event_type}")
    db = SessionLocal()
    try:
        event_id = event.get("id")
        if event_id and not ledger.mark_event_processed(db, event_id, event_type):
            logger.info(f"Duplicate event {event_id} ignored")
            db.rollback()
            return {"received": True}

        handler(db, event)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Error handling webhook event {event_type}: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": f"Error handling webhook: {e}"})
    finally:
        db.close()

    return {"received": True}


def _ts(epoch) -> Optional[datetime]:
    return datetime.fromtimestamp(epoch, tz=timezone.utc) if epoch else None


def _find_subscription(db, stripe_subscription_id) -> Optional[SubscriptionRecord]:
    return db.scalar(
        select(SubscriptionRecord).where(SubscriptionRecord.stripe_subscription_id == stripe_subscription_id)
    )


def _parse_addons(raw) -> list:
    if not raw:
        return []
    try:
        addons = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.error(f"Could not parse add-ons metadata, recording none: {e}")
        return []
    if not isinstance(addons, list):
        logger.error(f"Add-ons metadata is not a list: {raw!r}")
        return []
    return [addon for addon in addons if isinstance(addon, dict) and addon.get("id")]


def _subscription_fields(subscription) -> dict:
    return {
        "status": SubscriptionStatus(subscription["status"]).value,
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "current_period_start": _ts(subscription.get("current_period_start")),
        "current_period_end": _ts(subscription.get("current_period_end")),
    }


def _refresh_subscription(record, subscription, created_at) -> bool:
    """Bring an existing record in line with the processor's copy. False when the copy is stale or illegal."""
    if created_at and record.last_event_at and created_at < record.last_event_at:
        logger.info(f"Stale copy of subscription {subscription['id']} ignored")
        return False
    try:
        target = subscription_transition(record.status, subscription["status"])
    except InvalidTransitionError as e:
        logger.warning(f"Ignoring status of subscription {subscription['id']}: {e}")
        return False

    fields = _subscription_fields(subscription)
    record.status = target.value
    record.cancel_at_period_end = fields["cancel_at_period_end"]
    record.current_period_start = fields["current_period_start"] or record.current_period_start
    record.current_period_end = fields["current_period_end"] or record.current_period_end
    if created_at:
        record.last_event_at = created_at
    return True


def handle_checkout_session_completed(db, event):
    session = event["data"]["object"]
    if session.get("mode") != "subscription":
        logger.info(f"Checkout session {session['id']} in {session.get('mode')} mode ignored")
        return

    metadata = dict(session.get("metadata") or {})
    user_id = metadata.get("user_id")
    if not user_id:
        raise ValueError(f"No user_id in metadata for checkout session {session['id']}")

    subscription = stripe_service.retrieve_subscription(session["subscription"])

    history = ledger.find_checkout_history(db, session["id"])
    if history is not None:
        history.status = PaymentStatus.COMPLETED.value
        history.stripe_payment_id = session.get("payment_intent") or subscription["id"]
    else:
        logger.warning(f"No pending payment history for checkout session {session['id']}")

    record, created = ledger.insert_if_absent(
        db,
        SubscriptionRecord,
        {"stripe_subscription_id": subscription["id"]},
        user_id=user_id,
        stripe_customer_id=session.get("customer"),
        plan_id=metadata.get("plan_id"),
        quiz_result_id=metadata.get("quiz_result_id"),
        metadata_=dict(metadata, checkout_session_id=session["id"]),
        last_event_at=event.get("created"),
        **_subscription_fields(subscription),
    )
    announce = created or not (record.metadata_ or {}).get("checkout_session_id")
    if not created:
        _refresh_subscription(record, subscription, event.get("created"))
        record.metadata_ = dict(record.metadata_ or {}, checkout_session_id=session["id"])
        record.plan_id = record.plan_id or metadata.get("plan_id")
        record.quiz_result_id = record.quiz_result_id or metadata.get("quiz_result_id")

    if session.get("customer"):
        details = session.get("customer_details") or {}
        ledger.record_customer_mapping(
            db, user_id, session["customer"], details.get("email") or session.get("customer_email")
        )

    addons = _parse_addons(metadata.get("addons"))
    if addons:
        owned = set(db.scalars(
            select(AddonPurchase.addon_id).where(AddonPurchase.subscription_id == record.id)
        ).all())
        db.add_all([
            AddonPurchase(
                user_id=user_id,
                addon_id=str(addon["id"]),
                subscription_id=record.id,
                metadata_={"name": addon.get("name"), "price": addon.get("price")},
            )
            for addon in addons
            if str(addon["id"]) not in owned
        ])

    quiz_result_id = metadata.get("quiz_result_id")
    if quiz_result_id:
        quiz = db.get(QuizResult, quiz_result_id)
        if quiz is not None and not quiz.is_purchased:
            quiz.is_purchased = True
            quiz.purchase_date = utcnow()

    if not announce:
        logger.info(f"Checkout for subscription {subscription['id']} already announced")
        return

    plan_name = metadata.get("plan_name") or "coaching"
    ledger.notify_user(
        db,
        user_id,
        "Subscription Started",
        f"Your {plan_name} subscription is now {record.status}.",
        "success",
        action_url="/dashboard",
    )
    ledger.notify_admins(
        db,
        "New Subscription",
        f"User {user_id} started a subscription (ID: {subscription['id']})",
        "info",
        action_url="/admin/subscriptions",
    )


def handle_subscription_created(db, event):
    subscription = event["data"]["object"]
    user_id = (subscription.get("metadata") or {}).get("user_id")
    if not user_id:
        logger.info(f"Subscription {subscription['id']} has no user_id metadata")
        return

    ledger.insert_if_absent(
        db,
        SubscriptionRecord,
        {"stripe_subscription_id": subscription["id"]},
        user_id=user_id,
        stripe_customer_id=subscription.get("customer"),
        plan_id=subscription["metadata"].get("plan_id"),
        quiz_result_id=subscription["metadata"].get("quiz_result_id"),
        metadata_=dict(subscription["metadata"]),
        last_event_at=event.get("created"),
        **_subscription_fields(subscription),
    )


def handle_subscription_updated(db, event):
    subscription = event["data"]["object"]
    record = _find_subscription(db, subscription["id"])
    if record is None:
        logger.info(f"Update for unknown subscription {subscription['id']} ignored")
        return

    previous_status = record.status
    if not _refresh_subscription(record, subscription, event.get("created")):
        return
    target = SubscriptionStatus(record.status)

    previous = event["data"].get("previous_attributes") or {}
    if "cancel_at_period_end" in previous and bool(previous["cancel_at_period_end"]) != record.cancel_at_period_end:
        if record.cancel_at_period_end:
            ends = record.current_period_end.strftime("%B %d, %Y") if record.current_period_end else "the end of the period"
            ledger.notify_user(
                db,
                record.user_id,
                "Subscription Will End",
                f"Your subscription will end on {ends}.",
                "info",
                action_url="/dashboard/payment",
            )
        else:
            ledger.notify_user(
                db,
                record.user_id,
                "Subscription Renewed",
                "Your subscription will renew automatically.",
                "success",
                action_url="/dashboard/payment",
            )

    if target == SubscriptionStatus.PAST_DUE and previous_status != target.value:
        ledger.notify_user(
            db,
            record.user_id,
            "Payment Past Due",
            "Your subscription payment is past due. Please update your payment method.",
            "error",
            action_url="/dashboard/payment",
        )
    if target in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID) and previous_status != target.value:
        ledger.notify_admins(
            db,
            f"Subscription {target.value}",
            f"Subscription for user {record.user_id} is now {target.value} (ID: {subscription['id']})",
            "warning",
            action_url="/admin/subscriptions",
        )


def handle_subscription_deleted(db, event):
    subscription = event["data"]["object"]
    record = _find_subscription(db, subscription["id"])
    if record is None:
        logger.info(f"Deletion of unknown subscription {subscription['id']} ignored")
        return

    try:
        subscription_transition(record.status, SubscriptionStatus.CANCELED)
    except InvalidTransitionError as e:
        logger.warning(f"Ignoring deletion of subscription {subscription['id']}: {e}")
        return

    record.status = SubscriptionStatus.CANCELED.value
    record.cancel_at_period_end = False
    if event.get("created"):
        record.last_event_at = event["created"]

    ledger.notify_user(db, record.user_id, "Subscription Ended", "Your subscription has ended.", "info")
    ledger.notify_admins(
        db,
        "Subscription Ended",
        f"Subscription for user {record.user_id} has ended (ID: {subscription['id']})",
        "info",
        action_url="/admin/subscriptions",
    )


def handle_invoice_payment_failed(db, event):
    invoice = event["data"]["object"]
    customer_id = invoice.get("customer")
    customer = stripe_service.retrieve_customer(customer_id) if customer_id else None
    if customer is None:
        logger.warning(f"Invoice {invoice['id']} failed for unknown customer {customer_id}; dropped")
        return

    user_id = ledger.user_for_customer(db, customer["id"])
    if user_id is None:
        logger.warning(f"Invoice {invoice['id']} failed for unmapped customer {customer['id']}; dropped")
        return

    amount = MinorUnits(invoice.get("amount_due") or 0)
    currency = invoice.get("currency") or "usd"
    ledger.record_history(
        db,
        user_id,
        amount,
        PaymentStatus.FAILED.value,
        currency=currency,
        description="Subscription payment failed",
        payment_method="card",
        stripe_payment_id=invoice.get("payment_intent"),
        metadata={"invoice_id": invoice["id"], "subscription_id": invoice.get("subscription")},
    )
    ledger.notify_user(
        db,
        user_id,
        "Payment Failed",
        f"Your subscription payment of {amount.format(currency)} failed. Please update your payment method.",
        "error",
        action_url="/dashboard/payment",
    )
    ledger.notify_admins(
        db,
        "Subscription Payment Failed",
        f"Payment for invoice {invoice['id']} failed (User: {user_id})",
        "error",
        action_url="/admin/payments",
    )


def handle_invoice_payment_succeeded(db, event):
    invoice = event["data"]["object"]
    # The first invoice is covered by checkout.session.completed
    if not invoice.get("subscription") or invoice.get("billing_reason") == "subscription_create":
        return

    record = _find_subscription(db, invoice["subscription"])
    if record is None:
        logger.info(f"Invoice {invoice['id']} paid for unknown subscription {invoice['subscription']}")
        return

    amount = MinorUnits(invoice.get("amount_paid") or 0)
    currency = invoice.get("currency") or "usd"
    ledger.record_history(
        db,
        record.user_id,
        amount,
        PaymentStatus.COMPLETED.value,
        currency=currency,
        description=f"Subscription payment for {record.plan_id or record.stripe_subscription_id}",
        payment_method="card",
        stripe_payment_id=invoice.get("payment_intent"),
        metadata={"invoice_id": invoice["id"], "subscription_id": invoice["subscription"]},
    )
    ledger.notify_user(
        db,
        record.user_id,
        "Payment Received",
        f"We've received your payment of {amount.format(currency)} for your subscription.",
        "success",
    )


def handle_payment_intent_succeeded(db, event):
    intent = event["data"]["object"]
    payment_id = (intent.get("metadata") or {}).get("payment_id")
    if not payment_id or db.get(PaymentRecord, payment_id) is None:
        logger.info(f"PaymentIntent {intent['id']} is not linked to a payment record")
        return

    method_types = intent.get("payment_method_types") or []
    payment, entered_completed = ledger.transition_payment(
        db,
        payment_id,
        PaymentStatus.COMPLETED,
        payment_method=method_types[0] if method_types else None,
        payment_intent_id=intent["id"],
    )
    if not entered_completed:
        logger.info(f"Payment {payment_id} already completed")
        return

    amount = MinorUnits(intent.get("amount") or payment.amount)
    if (payment.metadata_ or {}).get("add_to_balance"):
        ledger.credit_balance(db, payment.user_id, amount, payment.currency)
        ledger.record_history(
            db,
            payment.user_id,
            amount,
            PaymentStatus.COMPLETED.value,
            currency=payment.currency,
            description=f"Added {amount.format(payment.currency)} to account",
            payment_method=payment.payment_method,
            stripe_payment_id=intent["id"],
            metadata={"payment_id": payment.id, "type": "balance_credit"},
        )

    ledger.notify_user(
        db,
        payment.user_id,
        "Payment Successful",
        f"Your payment of {amount.format(payment.currency)} has been processed successfully.",
        "success",
    )


def handle_payment_intent_failed(db, event):
    intent = event["data"]["object"]
    payment_id = (intent.get("metadata") or {}).get("payment_id")
    payment = db.get(PaymentRecord, payment_id) if payment_id else None
    if payment is None:
        logger.info(f"PaymentIntent {intent['id']} is not linked to a payment record")
        return
    if payment.status == PaymentStatus.COMPLETED.value:
        logger.warning(f"Failure for already completed payment {payment_id} ignored")
        return

    ledger.transition_payment(db, payment_id, PaymentStatus.FAILED, payment_intent_id=intent["id"])
    reason = (intent.get("last_payment_error") or {}).get("message") or "Unknown error"
    amount = MinorUnits(intent.get("amount") or payment.amount)
    ledger.notify_user(
        db,
        payment.user_id,
        "Payment Failed",
        f"Your payment of {amount.format(payment.currency)} failed. Reason: {reason}",
        "error",
    )


HANDLERS = {
    "checkout.session.completed": handle_checkout_session_completed,
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
}
