"""
Best-effort notifications.

Handlers collect `Notification`s while they mutate state and hand them to a
`Notifier` only after the transaction committed. Dispatch enqueues a Celery
task; a broken broker is logged and otherwise ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Dict, Optional

from core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    kind: str
    to_email: str
    context: Dict[str, Any] = field(default_factory=dict)


def _enqueue_email(kind: str, to_email: str, context: Dict[str, Any]) -> None:
    from tasks.notification_tasks import send_notification_email_task

    send_notification_email_task.delay(kind, to_email, context)


class Notifier:
    def __init__(
        self,
        *,
        admin_email: Optional[str] = None,
        site_url: Optional[str] = None,
        send: Callable[[str, str, Dict[str, Any]], None] = _enqueue_email,
    ) -> None:
        self.admin_email = (admin_email or "").strip() or None
        self.site_url = (site_url or settings.WEB_APP_BASE_URL).rstrip("/")
        self._send = send

    def download_url(self, code: str) -> str:
        return f"{self.site_url}/dl/{code}"

    def dispatch(self, notification: Notification) -> bool:
        """Never raises. Returns False when the notification could not be queued."""
        if not notification.to_email:
            return False
        try:
            self._send(notification.kind, notification.to_email, dict(notification.context))
            return True
        except Exception as e:
            logger.warning(
                f"Failed to queue {notification.kind} notification: {e}",
                extra={"extra_fields": {"kind": notification.kind}},
            )
            return False

    def dispatch_all(self, notifications: list[Notification]) -> int:
        return sum(1 for n in notifications if self.dispatch(n))


def build_notifier() -> Notifier:
    return Notifier(admin_email=settings.ADMIN_REPORT_EMAIL, site_url=settings.WEB_APP_BASE_URL)
