"""
Email Service

Sends transactional notifications (payments, Pro lifecycle) and the admin
storage report. Uses SMTP; with EMAIL_ENABLED off it only logs.
"""

import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from html import escape
from typing import Any, Dict, Optional, Tuple
from core.config import settings
import logging

logger = logging.getLogger(__name__)

KIND_LINK_PAID = "link_paid"
KIND_ADMIN_PAYMENT = "admin_payment"
KIND_PRO_ACTIVATED = "pro_activated"
KIND_PRO_CANCEL_SCHEDULED = "pro_cancel_scheduled"
KIND_PRO_REACTIVATED = "pro_reactivated"
KIND_PRO_CANCELED = "pro_canceled"
KIND_STORAGE_REPORT = "storage_report"


def bytes_to_human(n: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    v = float(n or 0)
    i = 0
    while v >= 1024 and i < len(units) - 1:
        v /= 1024
        i += 1
    return f"{v:.0f} {units[i]}" if i == 0 else f"{v:.2f} {units[i]}"


class EmailService:
    """Service for sending emails"""

    def __init__(self):
        self.smtp_server = settings.SMTP_SERVER
        self.smtp_port = settings.SMTP_PORT
        self.smtp_username = settings.SMTP_USERNAME
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.FROM_EMAIL
        self.from_name = settings.FROM_NAME
        self.enabled = settings.EMAIL_ENABLED

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """
        Send an email.

        Returns True if sent successfully, False otherwise.
        """
        if not self.enabled:
            logger.info(f"Email disabled, would send to {to_email}: {subject}")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_email

            if text_content:
                msg.attach(MIMEText(text_content, 'plain'))
            msg.attach(MIMEText(html_content, 'html'))

            if self.smtp_username and self.smtp_password:
                with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=30) as server:
                    server.starttls()
                    server.login(self.smtp_username, self.smtp_password)
                    server.send_message(msg)
            else:
                # Local development - just log
                logger.info(f"Would send email to {to_email}: {subject}")
                logger.debug(f"Content: {html_content[:200]}...")

            return True

        except Exception as e:
            logger.error(f"Error sending email to {to_email}: {str(e)}")
            return False

    def render(self, kind: str, context: Dict[str, Any]) -> Tuple[str, str, str]:
        """Return (subject, html, text) for a notification kind."""
        c = {k: escape(str(v)) if v is not None else "-" for k, v in context.items()}

        if kind == KIND_LINK_PAID:
            subject = "Your FilePay download is unlocked"
            text = (
                f"Payment received for code {context.get('code')}.\n"
                f"Download: {context.get('download_url')}\n"
                f"The link stays available until {context.get('expires_at')}."
            )
            html = (
                "<h2>Your download is ready</h2>"
                f"<p>Payment received for code <b>{c.get('code')}</b>.</p>"
                f"<p><a href=\"{c.get('download_url')}\">Download your file</a></p>"
                f"<p>Available until {c.get('expires_at')}.</p>"
            )
            return subject, html, text

        if kind == KIND_ADMIN_PAYMENT:
            subject = "New payment on FilePay"
            text = f"Code: {context.get('code')}\nVia: {context.get('via')}\nSession: {context.get('session_id')}"
            html = (
                "<h2>New payment received</h2>"
                f"<p><b>Code:</b> {c.get('code')}</p>"
                f"<p><b>Via:</b> {c.get('via')}</p>"
                f"<p><b>Session:</b> {c.get('session_id')}</p>"
            )
            return subject, html, text

        if kind == KIND_PRO_ACTIVATED:
            subject = "Welcome to FilePay Pro"
            text = f"Your Pro plan is active. Current period ends {context.get('current_period_end')}."
            html = (
                "<h2>Pro is active</h2>"
                "<p>Links you create can now be downloaded without a per-link payment.</p>"
                f"<p>Current period ends: {c.get('current_period_end')}</p>"
            )
            return subject, html, text

        if kind == KIND_PRO_CANCEL_SCHEDULED:
            subject = "Your FilePay Pro cancellation is scheduled"
            text = f"Pro stays active until {context.get('current_period_end')}, then ends."
            html = (
                "<h2>Cancellation scheduled</h2>"
                f"<p>Pro stays active until <b>{c.get('current_period_end')}</b>.</p>"
                "<p>Changed your mind? Reactivate from the billing page.</p>"
            )
            return subject, html, text

        if kind == KIND_PRO_REACTIVATED:
            subject = "Your FilePay Pro plan will renew"
            text = "Your scheduled cancellation was removed. Pro will renew as usual."
            html = "<h2>Pro reactivated</h2><p>Your scheduled cancellation was removed.</p>"
            return subject, html, text

        if kind == KIND_PRO_CANCELED:
            subject = "Your FilePay Pro subscription has ended"
            text = "Your Pro subscription is canceled. Links now need a one-time payment again."
            html = "<h2>Pro canceled</h2><p>New downloads of your links need a one-time payment again.</p>"
            return subject, html, text

        if kind == KIND_STORAGE_REPORT:
            total = bytes_to_human(int(context.get("total_bytes") or 0))
            expired_bytes = bytes_to_human(int(context.get("expired_bytes") or 0))
            count = int(context.get("expired_count") or 0)
            lines = context.get("lines") or []
            subject = f"FilePay report · Active {total} · Expired {count}"
            text = (
                f"Estimated active storage: {total}\n"
                f"Expired pending delete: {count} links ({expired_bytes})\n"
                f"Review & delete (link valid 1 hour): {context.get('admin_link')}\n\n"
                + "\n".join(lines)
            )
            rows = "\n".join(escape(str(line)) for line in lines)
            html = (
                "<h2>FilePay daily storage report</h2>"
                f"<p><b>Estimated active storage:</b> {total}</p>"
                f"<p><b>Expired pending delete:</b> {count} links ({expired_bytes})</p>"
                f"<p><a href=\"{c.get('admin_link')}\">Review &amp; delete all expired (secure)</a></p>"
                + (f"<pre>{rows}</pre>" if rows else "<p>No expired links pending delete.</p>")
                + "<p style=\"font-size:12px\">Totals are based on file sizes recorded at upload time.</p>"
            )
            return subject, html, text

        raise ValueError(f"Unknown notification kind: {kind}")

    def send_notification(self, kind: str, to_email: str, context: Dict[str, Any]) -> bool:
        subject, html, text = self.render(kind, context)
        return self.send_email(to_email, subject, html, text)


# Singleton instance
email_service = EmailService()
