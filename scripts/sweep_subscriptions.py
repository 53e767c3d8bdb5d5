#!/usr/bin/env python3
"""
Apply due subscription transitions (trial expiry, lapsed periods, scheduled
cancellations, expired grace) to every tenant. Meant for cron, alongside or
instead of POST /cron/subscription-sweeper.
"""
import os
import sys

# Add parent directory to path to import perdexa modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging

from perdexa.core.config import settings
from perdexa.db.session import SessionLocal
from perdexa.services.subscription_ledger import SubscriptionLedger


def main() -> int:
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    db = SessionLocal()
    try:
        result = SubscriptionLedger(db).sweep()
    finally:
        db.close()

    print(f"Examined {result.examined} subscription(s)")
    for event, count in sorted(result.applied.items()):
        print(f"  {event}: {count}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
