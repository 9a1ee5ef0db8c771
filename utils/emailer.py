import logging
import smtplib
import socket
from email.message import EmailMessage

from flask import current_app

from models import db
from models.user import User

logger = logging.getLogger(__name__)


def send_email(to_email: str, subject: str, body: str):
    """Best-effort delivery. Returns (sent, error); never raises."""
    host = current_app.config.get("SMTP_HOST")
    port = current_app.config.get("SMTP_PORT", 587)
    username = current_app.config.get("SMTP_USERNAME")
    password = current_app.config.get("SMTP_PASSWORD")
    from_email = current_app.config.get("SMTP_FROM_EMAIL") or username
    use_tls = current_app.config.get("SMTP_USE_TLS", True)
    timeout = current_app.config.get("SMTP_TIMEOUT_SECONDS", 10)

    if not to_email:
        return False, "No recipient"
    if not host or not from_email:
        return False, "Email not configured"

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=timeout) as server:
            if use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (socket.timeout, TimeoutError) as exc:
        logger.warning("SMTP timeout sending %r to %s: %s", subject, to_email, exc)
        return False, "timeout"
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("SMTP failure sending %r to %s: %s", subject, to_email, exc)
        return False, str(exc)


def notify_customer(booking, subject: str, body: str):
    """Send to the booking's customer; delivery failures are logged, not raised."""
    customer = db.session.get(User, booking.customer_id)
    sent, error = send_email(customer.email if customer else None, subject, body)
    if not sent:
        logger.warning("Notification for booking %s not sent: %s", booking.id, error)
    return sent
