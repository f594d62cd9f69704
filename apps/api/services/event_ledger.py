"""
Idempotency ledger for Stripe webhook deliveries.

Stripe delivers at least once. The first transaction to insert an event id
wins; every later delivery of the same id hits the primary key and is
reported as a duplicate. The insert is flushed inside the caller's
transaction so the ledger row and the entitlement mutation commit together.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import StripeEvent


def record_event(db: Session, *, event_id: str, event_type: str, stripe_created: Optional[int] = None) -> bool:
    """
    Try to claim `event_id`. Returns True if this caller claimed it, False if it
    was already recorded (the session is rolled back in that case).
    """
    if db.get(StripeEvent, event_id) is not None:
        return False

    db.add(StripeEvent(event_id=event_id, event_type=event_type or "unknown", stripe_created=stripe_created))
    try:
        db.flush()
    except IntegrityError:
        # Lost the race against a concurrent delivery of the same event.
        db.rollback()
        return False
    return True
