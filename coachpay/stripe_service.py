import logging
from typing import Optional

import stripe

from coachpay import config
from coachpay.money import MinorUnits

logger = logging.getLogger(__name__)


def _configure():
    api_key = config.stripe_secret_key()
    if not api_key:
        raise RuntimeError("Stripe not initialized - missing API key")
    stripe.api_key = api_key
    stripe.api_version = config.stripe_api_version()


def is_configured() -> bool:
    return bool(config.stripe_secret_key())


def create_payment_intent(
    amount: MinorUnits,
    currency: str,
    payment_id: Optional[str] = None,
    description: Optional[str] = None,
):
    _configure()
    params = {
        "amount": int(amount),
        "currency": currency,
        "automatic_payment_methods": {"enabled": True},
        "metadata": {"payment_id": payment_id or "", "description": description or "Payment"},
    }
    if payment_id:
        params["idempotency_key"] = f"payment-intent-{payment_id}"
    return stripe.PaymentIntent.create(**params)


def list_recurring_prices():
    _configure()
    prices = stripe.Price.list(active=True, type="recurring", expand=["data.product"], limit=100)
    return list(prices.data)


def create_checkout_session(**params):
    _configure()
    return stripe.checkout.Session.create(**params)


def retrieve_subscription(subscription_id: str):
    _configure()
    return stripe.Subscription.retrieve(subscription_id)


def retrieve_customer(customer_id: str):
    """Return the Stripe customer, or None when it is unknown or deleted."""
    _configure()
    try:
        customer = stripe.Customer.retrieve(customer_id)
    except stripe.error.InvalidRequestError as e:
        logger.warning(f"Stripe customer {customer_id} not found: {e}")
        return None
    if customer.get("deleted"):
        return None
    return customer


def find_or_create_customer(email: str, name: Optional[str] = None, user_id: Optional[str] = None):
    """
    Return (customer_id, created).

    Looks the customer up by email first. Creation carries an idempotency
    key derived from the email, so two concurrent first-time calls collapse
    into one customer on Stripe's side for the key's lifetime.
    """
    _configure()
    existing = stripe.Customer.list(email=email, limit=1)
    if existing.data:
        return existing.data[0]["id"], False

    metadata = {"user_id": user_id} if user_id else {}
    customer = stripe.Customer.create(
        email=email,
        name=name,
        metadata=metadata,
        idempotency_key=f"customer-{email.strip().lower()}",
    )
    logger.info(f"Created Stripe customer {customer.id} for {email}")
    return customer.id, True


def create_and_send_invoice(
    customer_id: str,
    amount: MinorUnits,
    currency: str,
    description: Optional[str],
    days_until_due: int,
):
    _configure()
    invoice = stripe.Invoice.create(
        customer=customer_id,
        collection_method="send_invoice",
        days_until_due=days_until_due,
        currency=currency,
        description=description,
        pending_invoice_items_behavior="exclude",
    )
    stripe.InvoiceItem.create(
        customer=customer_id,
        invoice=invoice.id,
        amount=int(amount),
        currency=currency,
        description=description or "Coaching services",
    )
    stripe.Invoice.finalize_invoice(invoice.id)
    return stripe.Invoice.send_invoice(invoice.id)
