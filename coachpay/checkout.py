import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from coachpay import ledger
from coachpay.actions import AddonItem, dispatch
from coachpay.auth import current_user
from coachpay.database import SessionLocal
from coachpay.lifecycle import PaymentStatus
from coachpay.money import Amount, MinorUnits

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    price_id: str
    plan_name: Optional[str] = None
    amount: Optional[Amount] = None
    currency: str = "usd"
    addons: list[AddonItem] = []
    quiz_result_id: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


def checkout_params(request: CheckoutRequest, user: dict) -> dict:
    return {
        "priceId": request.price_id,
        "mode": "subscription",
        "userId": user["user_id"],
        "userEmail": user.get("email"),
        "planName": request.plan_name,
        "quizResultId": request.quiz_result_id,
        "addons": [addon.model_dump() for addon in request.addons],
        "currency": request.currency,
        "successUrl": request.success_url,
        "cancelUrl": request.cancel_url,
    }


@router.post("/checkout")
def start_checkout(request: CheckoutRequest, user: dict = Depends(current_user)):
    """Create a hosted checkout session and send the browser to it."""
    total = MinorUnits((request.amount or 0) + sum(addon.price for addon in request.addons))

    db = SessionLocal()
    try:
        session = dispatch(db, "create-checkout-session", checkout_params(request, user))
        ledger.record_history(
            db,
            user["user_id"],
            total,
            PaymentStatus.PENDING.value,
            currency=request.currency,
            description=f"Subscription to {request.plan_name or request.price_id}",
            payment_method="stripe",
            metadata={
                "checkout_session_id": session["sessionId"],
                "plan_id": request.price_id,
                "plan_name": request.plan_name,
                "addon_ids": [addon.id for addon in request.addons],
            },
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Checkout for user {user['user_id']} failed: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail=f"Could not initialize payment: {e}")
    finally:
        db.close()

    return RedirectResponse(session["url"], status_code=303)
