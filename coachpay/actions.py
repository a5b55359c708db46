"""
Payment orchestrator actions.

One endpoint serves many operations, keyed by an ``action`` string. Each
action registers a pydantic params model next to its handler, and
``dispatch`` validates the payload against that model before the handler
runs, so no action can be reached with unchecked input.
"""

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from coachpay import config, ledger, stripe_service
from coachpay.lifecycle import PaymentStatus
from coachpay.models import InvoiceRecord, utcnow
from coachpay.money import Amount, SignedAmount

logger = logging.getLogger(__name__)


class UnknownActionError(Exception):
    pass


class ActionParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NoParams(ActionParams):
    pass


class PaymentIntentParams(ActionParams):
    amount: Amount
    currency: str = "usd"
    payment_id: Optional[str] = None
    description: Optional[str] = None


class UpdatePaymentStatusParams(ActionParams):
    payment_id: str
    status: PaymentStatus
    payment_intent_id: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Optional[Amount] = None
    description: Optional[str] = None


class BalanceAdjustmentParams(ActionParams):
    user_id: str
    amount: SignedAmount
    currency: str = "usd"
    description: Optional[str] = None


class AddonItem(ActionParams):
    id: str
    name: str
    price: Amount


class CheckoutSessionParams(ActionParams):
    price_id: str = Field(alias="priceId")
    mode: Literal["subscription", "payment"] = "subscription"
    user_id: Optional[str] = Field(default=None, alias="userId")
    user_email: Optional[str] = Field(default=None, alias="userEmail")
    success_url: Optional[str] = Field(default=None, alias="successUrl")
    cancel_url: Optional[str] = Field(default=None, alias="cancelUrl")
    plan_name: Optional[str] = Field(default=None, alias="planName")
    quiz_result_id: Optional[str] = Field(default=None, alias="quizResultId")
    addons: list[AddonItem] = []
    currency: str = "usd"


class InvoiceCustomer(ActionParams):
    email: str
    name: Optional[str] = None


class InvoiceParams(ActionParams):
    customer: InvoiceCustomer
    amount: Amount
    currency: str = "usd"
    description: Optional[str] = None
    days_until_due: int = Field(default=30, gt=0)
    invoice_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class Action:
    name: str
    params: type
    handler: Callable


ACTIONS: dict = {}


def action(*names, params):
    """Register ``handler`` under every name in ``names``."""
    def register(handler):
        for name in names:
            ACTIONS[name] = Action(name, params, handler)
        return handler
    return register


def dispatch(db: Session, name: str, payload: Optional[dict] = None) -> dict:
    registered = ACTIONS.get(name)
    if registered is None:
        raise UnknownActionError(f"Unknown action: {name}")
    params = registered.params.model_validate(payload or {})
    logger.info(f"Processing {name}")
    return registered.handler(db, params)


@action("test-connection", params=NoParams)
def connection_check(db, params):
    return {
        "success": True,
        "stripeKeyAvailable": stripe_service.is_configured(),
        "message": "Connection to Stripe helper function successful",
        "timestamp": utcnow().isoformat(),
    }


@action("get-publishable-key", params=NoParams)
def get_publishable_key(db, params):
    publishable_key = config.stripe_publishable_key()
    if not publishable_key:
        raise RuntimeError("Stripe publishable key not configured")
    return {"success": True, "publishableKey": publishable_key}


@action("create-payment-intent", "createPaymentIntent", params=PaymentIntentParams)
def create_payment_intent(db, params: PaymentIntentParams):
    intent = stripe_service.create_payment_intent(
        params.amount, params.currency, params.payment_id, params.description
    )
    return {"client_secret": intent.client_secret, "payment_intent_id": intent.id}


@action("get-subscription-plans", params=NoParams)
def get_subscription_plans(db, params):
    plans = []
    for price in stripe_service.list_recurring_prices():
        product = price.get("product") or {}
        if isinstance(product, str):
            product = {"id": product}
        recurring = price.get("recurring") or {}
        plans.append({
            "id": price["id"],
            "product_id": product.get("id"),
            "name": product.get("name") or price.get("nickname"),
            "description": product.get("description"),
            "amount": price.get("unit_amount"),
            "currency": price.get("currency"),
            "interval": recurring.get("interval"),
            "interval_count": recurring.get("interval_count", 1),
        })
    return {"plans": plans}


@action("updatePaymentStatus", params=UpdatePaymentStatusParams)
def update_payment_status(db, params: UpdatePaymentStatusParams):
    payment, entered_completed = ledger.transition_payment(
        db,
        params.payment_id,
        params.status,
        payment_method=params.payment_method,
        payment_intent_id=params.payment_intent_id,
    )

    balance = None
    if entered_completed and params.amount:
        balance = ledger.credit_balance(db, payment.user_id, params.amount, payment.currency)
        ledger.record_history(
            db,
            payment.user_id,
            params.amount,
            PaymentStatus.COMPLETED.value,
            currency=payment.currency,
            description=params.description or f"Added {params.amount.format(payment.currency)} to account",
            payment_method=payment.payment_method,
            stripe_payment_id=payment.payment_intent_id,
            metadata={"payment_id": payment.id, "type": "balance_credit"},
        )
    elif params.amount and not entered_completed:
        logger.info(f"Payment {payment.id} is {payment.status}; no balance credit applied")

    return {
        "success": True,
        "payment_id": payment.id,
        "status": payment.status,
        "balance": float(balance) if balance is not None else None,
    }


@action("update-account-balance", params=BalanceAdjustmentParams)
def update_account_balance(db, params: BalanceAdjustmentParams):
    balance = ledger.credit_balance(db, params.user_id, params.amount, params.currency)
    ledger.record_history(
        db,
        params.user_id,
        params.amount,
        PaymentStatus.COMPLETED.value,
        currency=params.currency,
        description=params.description or "Balance adjustment",
        payment_method="balance",
        metadata={"type": "balance_adjustment"},
    )
    return {"success": True, "user_id": params.user_id, "balance": float(balance)}


@action("create-checkout-session", "create_checkout_session", params=CheckoutSessionParams)
def create_checkout_session(db, params: CheckoutSessionParams):
    line_items = [{"price": params.price_id, "quantity": 1}]
    for addon in params.addons:
        line_items.append({
            "price_data": {
                "currency": params.currency,
                "unit_amount": int(addon.price),
                "product_data": {"name": addon.name},
            },
            "quantity": 1,
        })

    metadata = {
        "user_id": params.user_id,
        "plan_id": params.price_id,
        "plan_name": params.plan_name,
        "quiz_result_id": params.quiz_result_id,
    }
    if params.addons:
        metadata["addons"] = json.dumps(
            [{"id": a.id, "name": a.name, "price": int(a.price)} for a in params.addons]
        )
    metadata = {key: value for key, value in metadata.items() if value}

    session_params = {
        "mode": params.mode,
        "line_items": line_items,
        "success_url": params.success_url or config.checkout_success_url(),
        "cancel_url": params.cancel_url or config.checkout_cancel_url(),
        "metadata": metadata,
    }
    if params.user_id:
        session_params["client_reference_id"] = params.user_id
    if params.mode == "subscription":
        session_params["subscription_data"] = {"metadata": metadata}

    customer_id = ledger.customer_id_for_user(db, params.user_id) if params.user_id else None
    if customer_id:
        session_params["customer"] = customer_id
    elif params.user_email:
        session_params["customer_email"] = params.user_email

    session = stripe_service.create_checkout_session(**session_params)
    logger.info(f"Created checkout session {session.id} for user {params.user_id}")
    return {"sessionId": session.id, "url": session.url}


@action("create-invoice", params=InvoiceParams)
def create_invoice(db, params: InvoiceParams):
    invoice_row = None
    if params.invoice_id:
        invoice_row = db.get(InvoiceRecord, params.invoice_id)
        if invoice_row is None:
            raise ledger.NotFoundError(f"Invoice {params.invoice_id} not found")

    user_id = params.user_id or (invoice_row.user_id if invoice_row else None)
    customer_id, _ = stripe_service.find_or_create_customer(
        params.customer.email, params.customer.name, user_id
    )
    if user_id:
        ledger.record_customer_mapping(db, user_id, customer_id, params.customer.email)

    sent = stripe_service.create_and_send_invoice(
        customer_id, params.amount, params.currency, params.description, params.days_until_due
    )

    if invoice_row is not None:
        issued = utcnow()
        invoice_row.stripe_invoice_id = sent.id
        invoice_row.payment_link = sent.hosted_invoice_url
        invoice_row.status = sent.status
        invoice_row.issued_date = issued
        invoice_row.due_date = issued + timedelta(days=params.days_until_due)

    return {
        "success": True,
        "invoice_id": invoice_row.id if invoice_row is not None else None,
        "stripe_invoice_id": sent.id,
        "hosted_invoice_url": sent.hosted_invoice_url,
        "customer_id": customer_id,
        "status": sent.status,
    }
