import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select

from coachpay import ledger
from coachpay.actions import dispatch
from coachpay.auth import current_user
from coachpay.database import SessionLocal
from coachpay.models import PaymentHistory, SubscriptionRecord, UserNotification, utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


class ActionRequest(BaseModel):
    action: str
    params: Optional[dict] = None
    data: Optional[dict] = None


def error_response(error: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "error": str(error) or "An unknown error occurred",
            "errorType": type(error).__name__,
            "timestamp": utcnow().isoformat(),
        },
    )


def run_action(name: str, payload: Optional[dict]):
    db = SessionLocal()
    try:
        result = dispatch(db, name, payload)
        db.commit()
        return result
    except Exception as e:
        db.rollback()
        logger.error(f"Error in stripe-helper action {name}: {e}", exc_info=True)
        return error_response(e)
    finally:
        db.close()


@router.post("/stripe-helper")
async def stripe_helper(request: Request):
    try:
        body = ActionRequest.model_validate(await request.json())
    except Exception as e:
        logger.error(f"Rejected stripe-helper request: {e}")
        return error_response(e)

    payload = body.params if body.params is not None else body.data
    return await run_in_threadpool(run_action, body.action, payload)


@router.get("/billing/summary")
def billing_summary(user: dict = Depends(current_user)):
    user_id = user["user_id"]
    db = SessionLocal()
    try:
        subscriptions = db.scalars(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .order_by(SubscriptionRecord.created_at.desc())
        ).all()
        payments = db.scalars(
            select(PaymentHistory)
            .where(PaymentHistory.user_id == user_id)
            .order_by(PaymentHistory.created_at.desc())
            .limit(20)
        ).all()
        notifications = db.scalars(
            select(UserNotification)
            .where(UserNotification.user_id == user_id, UserNotification.is_read.is_(False))
            .order_by(UserNotification.created_at.desc())
        ).all()

        return {
            "balance": float(ledger.get_balance(db, user_id)),
            "subscriptions": [
                {
                    "stripe_subscription_id": s.stripe_subscription_id,
                    "plan_id": s.plan_id,
                    "status": s.status,
                    "cancel_at_period_end": s.cancel_at_period_end,
                    "current_period_end": s.current_period_end.isoformat() if s.current_period_end else None,
                }
                for s in subscriptions
            ],
            "payments": [
                {
                    "id": p.id,
                    "amount": p.amount,
                    "currency": p.currency,
                    "status": p.status,
                    "description": p.description,
                    "created_at": p.created_at.isoformat(),
                }
                for p in payments
            ],
            "notifications": [
                {
                    "id": n.id,
                    "title": n.title,
                    "message": n.message,
                    "type": n.notification_type,
                    "action_url": n.action_url,
                }
                for n in notifications
            ],
        }
    finally:
        db.close()
