"""
Send listing alerts and operator alerts by email via SMTP (Google Gmail or other).
Set SMTP_USER, SMTP_PASSWORD (and optionally NOTIFY_FROM, ADMIN_EMAIL) in .env.

Bodies are plain text; HTML templates are rendered by the template service, not here.
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

from listing_alerts.config import settings

logger = logging.getLogger(__name__)


def _from_address() -> str:
    if (settings.notify_from or "").strip():
        return settings.notify_from.strip()
    user = (settings.smtp_user or "").strip()
    if user:
        return f"Listing Alerts <{user}>"
    return "Listing Alerts <noreply@localhost>"


def smtp_configured() -> bool:
    return bool((settings.smtp_user or "").strip() and (settings.smtp_password or "").strip())


def _send(to_email: str, subject: str, body: str) -> bool:
    to_email = (to_email or "").strip()
    if not to_email:
        return False
    if not smtp_configured():
        logger.debug("SMTP_USER or SMTP_PASSWORD not set; skipping email to %s", to_email)
        return False
    user = settings.smtp_user.strip()
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = _from_address()
    msg["To"] = to_email
    msg.attach(MIMEText(body, "plain"))
    msg.attach(MIMEText(f"<pre style='font-family:sans-serif'>{escape(body)}</pre>", "html"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(user, settings.smtp_password.strip())
            server.sendmail(user, [to_email], msg.as_string())
        logger.info("Email sent to %s: %s", to_email, subject)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.exception("Failed to send email to %s: %s", to_email, e)
        return False


def send_listing_alert_email(to_email: str, title: str, body: str, deep_link: str | None = None) -> bool:
    """
    Send one listing alert (same title/body as the push). Returns True if sent, False if skipped or failed.
    """
    lines = [body, ""]
    if deep_link:
        lines.append(f"View listing: {deep_link}")
    lines.append("You can change which alerts you receive in the app under Notification Settings.")
    return _send(to_email, title, "\n".join(lines))


def send_admin_alert_email(to_email: str, subject: str, body: str) -> bool:
    return _send(to_email, f"[Listing Alerts] {subject}", body)
