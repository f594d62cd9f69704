"""
Notification e-mail tasks.

Enqueued by the payment reconciler after its database transaction commits;
a failure here never reaches the request that triggered it.
"""
from typing import Any, Dict
from celery import Task
from tasks import celery_app
from services.email_service import email_service
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.send_notification_email", bind=True, max_retries=3, default_retry_delay=60)
def send_notification_email_task(self: Task, kind: str, to_email: str, context: Dict[str, Any]) -> Dict:
    """Render and send one notification e-mail."""
    try:
        sent = email_service.send_notification(kind, to_email, context)
    except ValueError as e:
        # Unknown kind: a programming error, retrying cannot help.
        logger.error(f"Dropping notification {kind} to {to_email}: {e}")
        return {"status": "error", "kind": kind, "message": str(e)}

    if sent:
        return {"status": "success", "kind": kind, "to": to_email}
    return {"status": "skipped", "kind": kind, "to": to_email}
