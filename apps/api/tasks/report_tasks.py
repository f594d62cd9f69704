"""
Daily storage report.

Runs via Celery Beat. Summarizes active storage and expired links waiting for
deletion, and mails the admin a signed one-hour link to the cleanup page.
"""

from typing import Dict
from celery import Task
from sqlalchemy import func
from sqlalchemy.orm import Session
from core.config import settings
from core.database import get_db_sync
from core.timeutil import as_utc, utcnow
from tasks import celery_app
from models import FileLink
from services.admin_action import build_action_url
from services.email_service import KIND_STORAGE_REPORT, bytes_to_human, email_service
import logging

logger = logging.getLogger(__name__)

REPORT_MAX_LINES = 30


def build_storage_report(db: Session, *, now=None) -> Dict:
    """Collect the numbers for the report; no side effects."""
    now = now or utcnow()

    total_bytes = (
        db.query(func.coalesce(func.sum(FileLink.file_bytes), 0))
        .filter(FileLink.deleted_at.is_(None), FileLink.expires_at > now)
        .scalar()
    )

    expired = (
        db.query(FileLink)
        .filter(FileLink.expires_at <= now, FileLink.storage_deleted.is_(False))
        .order_by(FileLink.expires_at.asc())
        .all()
    )
    expired_bytes = sum(int(r.file_bytes or 0) for r in expired)

    lines = []
    for r in expired[:REPORT_MAX_LINES]:
        expires_at = as_utc(r.expires_at)
        lines.append(
            f"{r.code}  {bytes_to_human(int(r.file_bytes or 0))}  "
            f"expired {expires_at.strftime('%Y-%m-%d %H:%M') if expires_at else '-'}"
        )
    if len(expired) > REPORT_MAX_LINES:
        lines.append(f"... and {len(expired) - REPORT_MAX_LINES} more")

    return {
        "total_bytes": int(total_bytes or 0),
        "expired_bytes": expired_bytes,
        "expired_count": len(expired),
        "lines": lines,
    }


@celery_app.task(name="tasks.send_storage_report", bind=True)
def send_storage_report_task(self: Task) -> Dict:
    """Build and e-mail the daily storage report to ADMIN_REPORT_EMAIL."""
    to_email = settings.ADMIN_REPORT_EMAIL
    if not to_email:
        return {"status": "skipped", "message": "ADMIN_REPORT_EMAIL not set"}
    if not settings.ADMIN_ACTION_SECRET:
        return {"status": "skipped", "message": "ADMIN_ACTION_SECRET not set"}

    db: Session = get_db_sync()
    try:
        report = build_storage_report(db)
    except Exception as e:
        logger.error(f"Storage report query failed: {e}", exc_info=True)
        raise
    finally:
        db.close()

    report["admin_link"] = build_action_url()
    sent = email_service.send_notification(KIND_STORAGE_REPORT, to_email, report)
    logger.info(
        "Storage report generated",
        extra={"extra_fields": {"expired_count": report["expired_count"], "sent": sent}},
    )
    return {
        "status": "success" if sent else "not_sent",
        "expired_count": report["expired_count"],
        "total_bytes": report["total_bytes"],
    }
