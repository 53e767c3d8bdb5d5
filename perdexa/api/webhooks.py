"""
Stripe webhook intake.

The raw body is handed to ReconciliationGateway untouched; the signature is
checked before anything in it is trusted.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from perdexa.db.session import get_db
from perdexa.services.reconciliation import ReconciliationGateway

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
):
    """
    Handle Stripe webhook events.

    - 400 ``invalid_signature`` when verification fails (nothing is written)
    - 200 for everything verified, including unknown event types and replays
    """
    body = await request.body()
    logger.info(f"[WEBHOOK] Received delivery ({len(body)} bytes, signed={stripe_signature is not None})")
    result = ReconciliationGateway(db).handle(body, stripe_signature)
    return result.to_dict()
