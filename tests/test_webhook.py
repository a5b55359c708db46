import json
from decimal import Decimal

import stripe
from sqlalchemy import func, select

from coachpay.models import (
    AccountBalance,
    AddonPurchase,
    AdminNotification,
    PaymentHistory,
    PaymentRecord,
    ProcessedEvent,
    QuizResult,
    StripeCustomer,
    SubscriptionRecord,
    UserNotification,
)

SUBSCRIPTION = {
    "id": "sub_123",
    "status": "active",
    "cancel_at_period_end": False,
    "current_period_start": 1700000000,
    "current_period_end": 1702592000,
}


def count(db, model):
    return db.scalar(select(func.count()).select_from(model))


def checkout_completed(event_id="evt_1", metadata=None, mode="subscription"):
    if metadata is None:
        metadata = {"user_id": "u1", "plan_id": "price_abc", "plan_name": "Elite"}
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": 1700000000,
        "data": {
            "object": {
                "id": "cs_1",
                "mode": mode,
                "customer": "cus_1",
                "customer_details": {"email": "a@b.com"},
                "subscription": "sub_123",
                "metadata": metadata,
            }
        },
    }


def subscription_updated(event_id, status="active", created=1700000100, previous=None, **fields):
    subscription = dict(SUBSCRIPTION, status=status, **fields)
    data = {"object": subscription}
    if previous is not None:
        data["previous_attributes"] = previous
    return {"id": event_id, "type": "customer.subscription.updated", "created": created, "data": data}


def add_subscription(db, status="active", last_event_at=1700000000):
    db.add(SubscriptionRecord(
        user_id="u1",
        stripe_subscription_id="sub_123",
        stripe_customer_id="cus_1",
        plan_id="price_abc",
        status=status,
        last_event_at=last_event_at,
    ))
    db.commit()


def titles(db, user_id="u1"):
    db.expire_all()
    return [n.title for n in db.scalars(select(UserNotification).where(UserNotification.user_id == user_id))]


# ---- Signature verification ----

def test_missing_signature_rejected(client, mocker):
    construct = mocker.patch("stripe.Webhook.construct_event")

    response = client.post("/stripe-webhook", content="raw_payload")

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing stripe signature"
    construct.assert_not_called()


def test_invalid_signature_rejected_without_writes(client, db, mocker):
    mocker.patch(
        "stripe.Webhook.construct_event",
        side_effect=stripe.error.SignatureVerificationError("No signatures found", "t=1,v1=bad"),
    )
    retrieve = mocker.patch("stripe.Subscription.retrieve")

    response = client.post("/stripe-webhook", content="raw_payload", headers={"stripe-signature": "t=1,v1=bad"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"
    retrieve.assert_not_called()
    for model in (ProcessedEvent, SubscriptionRecord, UserNotification, PaymentHistory):
        assert count(db, model) == 0


def test_invalid_payload_rejected(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json"))

    response = client.post("/stripe-webhook", content="{", headers={"stripe-signature": "sig"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"


def test_missing_webhook_secret(client, monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")

    response = client.post("/stripe-webhook", content="raw_payload", headers={"stripe-signature": "sig"})

    assert response.status_code == 500


def test_unhandled_event_type_acknowledged(send_event, db):
    response = send_event({"id": "evt_x", "type": "charge.refunded", "data": {"object": {}}})

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert count(db, ProcessedEvent) == 0


# ---- checkout.session.completed ----

def test_checkout_completed_creates_subscription(send_event, db, mocker):
    mocker.patch("stripe.Subscription.retrieve", return_value=dict(SUBSCRIPTION))
    db.add(PaymentHistory(
        user_id="u1", amount=4900, status="pending", metadata_={"checkout_session_id": "cs_1"},
    ))
    db.commit()

    response = send_event(checkout_completed())

    assert response.status_code == 200
    db.expire_all()
    record = db.scalars(select(SubscriptionRecord)).one()
    assert record.user_id == "u1"
    assert record.status == "active"
    assert record.plan_id == "price_abc"
    assert record.stripe_customer_id == "cus_1"
    assert db.scalars(select(PaymentHistory)).one().status == "completed"
    assert db.scalars(select(StripeCustomer)).one().user_id == "u1"
    assert titles(db) == ["Subscription Started"]
    assert count(db, AdminNotification) == 1


def test_checkout_completed_redelivery_applies_once(send_event, db, mocker):
    mocker.patch("stripe.Subscription.retrieve", return_value=dict(SUBSCRIPTION))

    send_event(checkout_completed("evt_1"))
    send_event(checkout_completed("evt_1"))

    assert count(db, SubscriptionRecord) == 1
    assert count(db, UserNotification) == 1
    assert count(db, ProcessedEvent) == 1


def test_checkout_completed_distinct_events_one_subscription(send_event, db, mocker):
    mocker.patch("stripe.Subscription.retrieve", return_value=dict(SUBSCRIPTION))

    first = send_event(checkout_completed("evt_1"))
    second = send_event(checkout_completed("evt_2"))

    assert first.status_code == 200
    assert second.status_code == 200
    assert count(db, SubscriptionRecord) == 1
    assert count(db, StripeCustomer) == 1
    assert count(db, UserNotification) == 1
    assert count(db, AdminNotification) == 1


def test_checkout_completed_refreshes_subscription_created_first(send_event, db, mocker):
    send_event({
        "id": "evt_c1",
        "type": "customer.subscription.created",
        "created": 1700000000,
        "data": {"object": dict(
            SUBSCRIPTION, status="incomplete", customer="cus_1", metadata={"user_id": "u1", "plan_id": "price_abc"},
        )},
    })
    mocker.patch("stripe.Subscription.retrieve", return_value=dict(SUBSCRIPTION, status="active"))

    response = send_event(checkout_completed(metadata={"user_id": "u1", "plan_id": "price_abc", "plan_name": "Elite"}))

    assert response.status_code == 200
    db.expire_all()
    record = db.scalars(select(SubscriptionRecord)).one()
    assert record.status == "active"
    assert record.current_period_end is not None
    assert record.metadata_["checkout_session_id"] == "cs_1"
    notification = db.scalars(select(UserNotification)).one()
    assert notification.title == "Subscription Started"
    assert notification.message == "Your Elite subscription is now active."


def test_checkout_completed_without_user_rolls_back(send_event, db, mocker):
    retrieve = mocker.patch("stripe.Subscription.retrieve")

    response = send_event(checkout_completed(metadata={"plan_id": "price_abc"}))

    assert response.status_code == 500
    assert "No user_id" in response.json()["error"]
    retrieve.assert_not_called()
    assert count(db, ProcessedEvent) == 0
    assert count(db, SubscriptionRecord) == 0


def test_checkout_completed_payment_mode_ignored(send_event, db, mocker):
    retrieve = mocker.patch("stripe.Subscription.retrieve")

    response = send_event(checkout_completed(mode="payment"))

    assert response.status_code == 200
    retrieve.assert_not_called()
    assert count(db, SubscriptionRecord) == 0


def test_checkout_completed_records_addons_and_quiz(send_event, db, mocker):
    mocker.patch("stripe.Subscription.retrieve", return_value=dict(SUBSCRIPTION))
    db.add(QuizResult(id="quiz_1", user_id="u1"))
    db.commit()
    addons = [{"id": "addon_meal", "name": "Meal plan", "price": 1500}, {"id": "addon_call", "name": "Call", "price": 900}]

    send_event(checkout_completed(metadata={
        "user_id": "u1",
        "plan_id": "price_abc",
        "quiz_result_id": "quiz_1",
        "addons": json.dumps(addons),
    }))

    db.expire_all()
    purchases = db.scalars(select(AddonPurchase)).all()
    assert sorted(p.addon_id for p in purchases) == ["addon_call", "addon_meal"]
    record = db.scalars(select(SubscriptionRecord)).one()
    assert all(p.subscription_id == record.id for p in purchases)
    quiz = db.get(QuizResult, "quiz_1")
    assert quiz.is_purchased is True
    assert quiz.purchase_date is not None


def test_checkout_completed_with_malformed_addons(send_event, db, mocker):
    mocker.patch("stripe.Subscription.retrieve", return_value=dict(SUBSCRIPTION))

    response = send_event(checkout_completed(metadata={"user_id": "u1", "addons": "[not json"}))

    assert response.status_code == 200
    assert count(db, SubscriptionRecord) == 1
    assert count(db, AddonPurchase) == 0


def test_subscription_created_inserts_once(send_event, db):
    event = {
        "id": "evt_c1",
        "type": "customer.subscription.created",
        "created": 1700000000,
        "data": {"object": dict(SUBSCRIPTION, customer="cus_1", metadata={"user_id": "u1", "plan_id": "price_abc"})},
    }

    send_event(event)
    send_event(dict(event, id="evt_c2"))

    assert count(db, SubscriptionRecord) == 1
    assert count(db, UserNotification) == 0


# ---- customer.subscription.updated / deleted ----

def test_subscription_update_for_unknown_subscription(send_event, db):
    response = send_event(subscription_updated("evt_u1", status="past_due"))

    assert response.status_code == 200
    assert count(db, SubscriptionRecord) == 0


def test_subscription_scheduled_to_end(send_event, db):
    add_subscription(db)

    send_event(subscription_updated("evt_u1", cancel_at_period_end=True, previous={"cancel_at_period_end": False}))

    db.expire_all()
    assert db.scalars(select(SubscriptionRecord)).one().cancel_at_period_end is True
    notification = db.scalars(select(UserNotification)).one()
    assert notification.title == "Subscription Will End"
    assert "December 14, 2023" in notification.message
    assert notification.notification_type == "info"


def test_subscription_renewal_resumed(send_event, db):
    add_subscription(db)

    send_event(subscription_updated("evt_u1", cancel_at_period_end=True, previous={"cancel_at_period_end": False}))
    send_event(subscription_updated(
        "evt_u2", created=1700000200, cancel_at_period_end=False, previous={"cancel_at_period_end": True},
    ))

    assert sorted(titles(db)) == ["Subscription Renewed", "Subscription Will End"]
    db.expire_all()
    assert db.scalars(select(SubscriptionRecord)).one().cancel_at_period_end is False


def test_subscription_past_due_notifies(send_event, db):
    add_subscription(db)

    send_event(subscription_updated("evt_u1", status="past_due"))

    db.expire_all()
    assert db.scalars(select(SubscriptionRecord)).one().status == "past_due"
    assert titles(db) == ["Payment Past Due"]
    assert db.scalars(select(AdminNotification)).one().notification_type == "warning"


def test_stale_subscription_update_ignored(send_event, db):
    add_subscription(db, status="past_due", last_event_at=1700000500)

    send_event(subscription_updated("evt_old", status="active", created=1700000100))

    db.expire_all()
    assert db.scalars(select(SubscriptionRecord)).one().status == "past_due"


def test_canceled_subscription_not_reactivated(send_event, db):
    add_subscription(db, status="canceled")

    response = send_event(subscription_updated("evt_u1", status="active"))

    assert response.status_code == 200
    db.expire_all()
    assert db.scalars(select(SubscriptionRecord)).one().status == "canceled"
    assert count(db, UserNotification) == 0


def test_subscription_deleted(send_event, db):
    add_subscription(db)
    event = {
        "id": "evt_d1",
        "type": "customer.subscription.deleted",
        "created": 1700000300,
        "data": {"object": dict(SUBSCRIPTION, status="canceled")},
    }

    response = send_event(event)

    assert response.status_code == 200
    db.expire_all()
    assert db.scalars(select(SubscriptionRecord)).one().status == "canceled"
    assert titles(db) == ["Subscription Ended"]


# ---- invoices ----

def invoice_event(event_type, event_id="evt_i1", **fields):
    invoice = {
        "id": "in_1",
        "customer": "cus_1",
        "subscription": "sub_123",
        "payment_intent": "pi_9",
        "currency": "usd",
        "amount_due": 4900,
        "amount_paid": 4900,
    }
    invoice.update(fields)
    return {"id": event_id, "type": event_type, "created": 1700000400, "data": {"object": invoice}}


def test_invoice_payment_failed_records_failure(send_event, db, mocker):
    db.add(StripeCustomer(user_id="u1", stripe_customer_id="cus_1", email="a@b.com"))
    db.commit()
    mocker.patch("stripe.Customer.retrieve", return_value={"id": "cus_1", "email": "a@b.com"})

    response = send_event(invoice_event("invoice.payment_failed"))

    assert response.status_code == 200
    history = db.scalars(select(PaymentHistory)).one()
    assert history.status == "failed"
    assert history.amount == 4900
    notification = db.scalars(select(UserNotification)).one()
    assert notification.title == "Payment Failed"
    assert notification.notification_type == "error"
    assert "$49.00" in notification.message
    assert count(db, AdminNotification) == 1


def test_invoice_payment_failed_unknown_customer_dropped(send_event, db, mocker):
    mocker.patch(
        "stripe.Customer.retrieve",
        side_effect=stripe.error.InvalidRequestError("No such customer: 'cus_1'", "id"),
    )

    response = send_event(invoice_event("invoice.payment_failed"))

    assert response.status_code == 200
    assert count(db, PaymentHistory) == 0
    assert count(db, UserNotification) == 0


def test_invoice_payment_failed_unmapped_customer_dropped(send_event, db, mocker):
    mocker.patch("stripe.Customer.retrieve", return_value={"id": "cus_1"})

    response = send_event(invoice_event("invoice.payment_failed"))

    assert response.status_code == 200
    assert count(db, PaymentHistory) == 0


def test_invoice_renewal_recorded(send_event, db):
    add_subscription(db)

    send_event(invoice_event("invoice.payment_succeeded", billing_reason="subscription_cycle"))

    history = db.scalars(select(PaymentHistory)).one()
    assert history.status == "completed"
    assert history.amount == 4900
    assert titles(db) == ["Payment Received"]


def test_first_invoice_left_to_checkout(send_event, db):
    add_subscription(db)

    send_event(invoice_event("invoice.payment_succeeded", billing_reason="subscription_create"))

    assert count(db, PaymentHistory) == 0


# ---- payment intents ----

def intent_event(event_type, event_id, **fields):
    intent = {"id": "pi_1", "amount": 2000, "metadata": {"payment_id": "pay_1"}, "payment_method_types": ["card"]}
    intent.update(fields)
    return {"id": event_id, "type": event_type, "created": 1700000500, "data": {"object": intent}}


def test_payment_intent_succeeded_credits_once(send_event, db):
    db.add(PaymentRecord(id="pay_1", user_id="u1", amount=2000, status="pending", metadata_={"add_to_balance": True}))
    db.commit()

    send_event(intent_event("payment_intent.succeeded", "evt_p1"))
    send_event(intent_event("payment_intent.succeeded", "evt_p2"))

    db.expire_all()
    payment = db.get(PaymentRecord, "pay_1")
    assert payment.status == "completed"
    assert payment.payment_method == "card"
    assert db.scalar(select(AccountBalance.balance)) == Decimal("20.00")
    assert count(db, PaymentHistory) == 1
    assert titles(db) == ["Payment Successful"]


def test_payment_intent_succeeded_other_currency_rolls_back(send_event, db):
    db.add(PaymentRecord(
        id="pay_1", user_id="u1", amount=2000, currency="eur", status="pending", metadata_={"add_to_balance": True},
    ))
    db.add(AccountBalance(user_id="u1", balance=Decimal("5.00"), currency="usd"))
    db.commit()

    response = send_event(intent_event("payment_intent.succeeded", "evt_p1"))

    assert response.status_code == 500
    db.expire_all()
    assert db.get(PaymentRecord, "pay_1").status == "pending"
    assert db.scalar(select(AccountBalance.balance)) == Decimal("5.00")
    assert count(db, ProcessedEvent) == 0


def test_payment_intent_failed(send_event, db):
    db.add(PaymentRecord(id="pay_1", user_id="u1", amount=2000, status="pending"))
    db.commit()

    send_event(intent_event(
        "payment_intent.payment_failed", "evt_f1", last_payment_error={"message": "Your card was declined."},
    ))

    db.expire_all()
    assert db.get(PaymentRecord, "pay_1").status == "failed"
    notification = db.scalars(select(UserNotification)).one()
    assert "Your card was declined." in notification.message


def test_payment_intent_failure_after_completion_ignored(send_event, db):
    db.add(PaymentRecord(id="pay_1", user_id="u1", amount=2000, status="completed"))
    db.commit()

    send_event(intent_event("payment_intent.payment_failed", "evt_f1"))

    db.expire_all()
    assert db.get(PaymentRecord, "pay_1").status == "completed"
    assert count(db, UserNotification) == 0
