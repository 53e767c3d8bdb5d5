from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from perdexa.api.deps import require_cron_secret
from perdexa.db.session import get_db
from perdexa.schemas.billing import SweepResponse
from perdexa.services.subscription_ledger import SubscriptionLedger

router = APIRouter()


@router.post("/subscription-sweeper", response_model=SweepResponse, dependencies=[Depends(require_cron_secret)])
def subscription_sweeper(db: Session = Depends(get_db)):
    """Apply due trial/period/grace transitions to every subscription."""
    return SubscriptionLedger(db).sweep().to_dict()
