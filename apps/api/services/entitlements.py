"""
Entitlement store: link and subscription reads/writes plus the download gate.

Every decision is made from a fresh read; nothing here caches.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import enum
import logging
from typing import Optional

from sqlalchemy.orm import Session

from core.timeutil import utcnow
from models import FileLink, Subscription
from services.expiry_sweeper import expire_link
from services.object_storage import StorageService

logger = logging.getLogger(__name__)


def get_link(db: Session, code: str) -> Optional[FileLink]:
    # populate_existing: conditional updates elsewhere bypass the identity map.
    return db.query(FileLink).filter(FileLink.code == code).populate_existing().first()


def get_subscription(db: Session, user_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.user_id == user_id).populate_existing().first()


def ensure_subscription_row(db: Session, *, user_id: str, email: Optional[str] = None) -> Subscription:
    sub = get_subscription(db, user_id)
    if sub:
        if email and not sub.email:
            sub.email = email
        return sub
    sub = Subscription(user_id=user_id, email=email)
    db.add(sub)
    db.flush()
    return sub


def user_has_active_pro(db: Session, user_id: Optional[str]) -> bool:
    if not user_id:
        return False
    sub = get_subscription(db, user_id)
    return bool(sub and sub.is_pro_active)


class PaidTransition(str, enum.Enum):
    TRANSITIONED = "transitioned"
    ALREADY_PAID = "already_paid"
    NOT_FOUND = "not_found"
    DELETED = "deleted"


def mark_link_paid(db: Session, code: str, *, session_id: Optional[str], now: Optional[datetime] = None) -> PaidTransition:
    """
    Flip paid false -> true at most once.

    The update is conditioned on paid=false and deleted_at IS NULL, so
    concurrent finalize/webhook calls for the same checkout produce exactly
    one TRANSITIONED; paid_at is never rewritten.
    """
    now = now or utcnow()
    updated = (
        db.query(FileLink)
        .filter(FileLink.code == code, FileLink.paid.is_(False), FileLink.deleted_at.is_(None))
        .update(
            {FileLink.paid: True, FileLink.paid_at: now, FileLink.paid_session_id: session_id},
            synchronize_session=False,
        )
    )
    if updated == 1:
        return PaidTransition.TRANSITIONED

    link = get_link(db, code)
    if link is None:
        return PaidTransition.NOT_FOUND
    if link.deleted_at is not None:
        return PaidTransition.DELETED
    return PaidTransition.ALREADY_PAID


class GateOutcome(str, enum.Enum):
    ALLOW = "allow"
    NOT_FOUND = "not_found"
    GONE = "gone"
    PAYMENT_REQUIRED = "payment_required"


@dataclass(frozen=True)
class GateDecision:
    outcome: GateOutcome
    link: Optional[FileLink] = None
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == GateOutcome.ALLOW


def gate_download(db: Session, code: str, storage: StorageService, now: Optional[datetime] = None) -> GateDecision:
    """
    Decide whether `code` may be downloaded right now.

    deleted -> GONE; expired -> lazy expiry, then GONE; paid -> ALLOW;
    creator on active Pro -> ALLOW; otherwise PAYMENT_REQUIRED.
    """
    now = now or utcnow()
    link = get_link(db, code)
    if link is None:
        return GateDecision(GateOutcome.NOT_FOUND)

    if link.deleted_at is not None:
        return GateDecision(GateOutcome.GONE, link, reason="deleted")

    lazy = expire_link(db, link, storage, now)
    if lazy.expired:
        return GateDecision(GateOutcome.GONE, link, reason="expired")

    if link.paid:
        return GateDecision(GateOutcome.ALLOW, link, reason="paid")

    if user_has_active_pro(db, link.created_by_user_id):
        return GateDecision(GateOutcome.ALLOW, link, reason="creator_pro")

    return GateDecision(GateOutcome.PAYMENT_REQUIRED, link)
