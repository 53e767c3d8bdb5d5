"""
The signed-in user's monthly billing track.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from perdexa.api.deps import Actor, get_current_actor
from perdexa.core.rate_limit import rate_limit
from perdexa.db.session import get_db
from perdexa.schemas.billing import PaymentRequestBody
from perdexa.services.monthly_payments import MonthlyPaymentLedger

router = APIRouter()


@router.get("")
def get_billing(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return MonthlyPaymentLedger(db).month_overview(actor.user_id)


@router.post("/request")
@rate_limit(max_requests=5, window_seconds=300)  # 5 payment requests per 5 min per user
def request_payment(
    body: PaymentRequestBody,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Notify the billing operator; no payment is recorded."""
    forwarded = request.headers.get("x-forwarded-for")
    ip = request.headers.get("x-real-ip") or (forwarded.split(",")[0].strip() if forwarded else None)
    sent = MonthlyPaymentLedger(db).request_payment(
        actor.user_id,
        body.month_key,
        context={"ip": ip, "user_agent": request.headers.get("user-agent")},
    )
    return {"ok": True, "notified": sent, "month_key": body.month_key.strip()}
