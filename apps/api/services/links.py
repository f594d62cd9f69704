"""
Link issuance: register an uploaded object under a short payable code.
"""

from __future__ import annotations

from datetime import timedelta
import logging
import os
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.timeutil import utcnow
from models import FileLink
from services.stripe_service import link_price_for_days

logger = logging.getLogger(__name__)

# No 0/O/1/I: codes get read aloud and typed by hand.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 10


class CodeGenerationError(RuntimeError):
    """Could not find a free code."""


def make_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _code_taken(db: Session, code: str) -> bool:
    return db.query(FileLink.id).filter(FileLink.code == code).first() is not None


def generate_unique_code(db: Session) -> str:
    for _ in range(MAX_CODE_ATTEMPTS):
        code = make_code()
        if not _code_taken(db, code):
            return code
    raise CodeGenerationError(f"No free code after {MAX_CODE_ATTEMPTS} attempts")


def content_policy_flag(file_path: str) -> Optional[str]:
    """Return a flag reason for files we want an audit trail on, else None."""
    _, ext = os.path.splitext(file_path or "")
    if ext and ext.lower() in settings.blocked_extensions:
        return f"blocked_extension:{ext.lower()}"
    return None


def create_link(
    db: Session,
    *,
    file_path: str,
    days: Optional[int] = None,
    file_bytes: Optional[int] = None,
    created_by_user_id: Optional[str] = None,
) -> FileLink:
    safe_days, _ = link_price_for_days(days)
    flag_reason = content_policy_flag(file_path)

    link = FileLink(
        code=generate_unique_code(db),
        file_path=file_path,
        file_bytes=file_bytes if file_bytes and file_bytes > 0 else None,
        days=safe_days,
        paid=False,
        expires_at=utcnow() + timedelta(days=safe_days),
        created_by_user_id=created_by_user_id,
        flagged=flag_reason is not None,
        flag_reason=flag_reason,
    )
    db.add(link)
    db.commit()
    db.refresh(link)

    if flag_reason:
        logger.warning(f"Link {link.code} flagged at creation: {flag_reason}")
    return link


def list_user_links(db: Session, user_id: str, *, limit: int = 100) -> list[FileLink]:
    return (
        db.query(FileLink)
        .filter(FileLink.created_by_user_id == user_id)
        .order_by(FileLink.created_at.desc())
        .limit(limit)
        .all()
    )
