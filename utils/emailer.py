import smtplib
from email.message import EmailMessage

from flask import current_app

from utils.logging_config import get_logger

logger = get_logger(__name__)


def _redact_email(email: str) -> str:
    """Redact email for logging: u***@domain.com"""
    if email and "@" in email:
        local, domain = email.rsplit("@", 1)
        return f"{local[0]}***@{domain}" if local else f"***@{domain}"
    return "***"


def send_email(to_email: str, subject: str, body: str):
    host = current_app.config.get("SMTP_HOST")
    port = current_app.config.get("SMTP_PORT", 587)
    username = current_app.config.get("SMTP_USERNAME")
    password = current_app.config.get("SMTP_PASSWORD")
    from_email = current_app.config.get("SMTP_FROM_EMAIL") or username
    use_tls = current_app.config.get("SMTP_USE_TLS", True)

    if not host or not from_email:
        logger.info("email_not_configured", to=_redact_email(to_email), subject=subject)
        return False, "Email not configured"

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as server:
            if use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("email_send_failed", to=_redact_email(to_email), subject=subject, error=str(exc))
        return False, str(exc)


def _link(path: str) -> str:
    base = current_app.config.get("FRONTEND_URL", "").rstrip("/")
    return f"{base}{path}"


def send_verification_email(to_email: str, token: str):
    app_name = current_app.config.get("APP_NAME", "BackOffice")
    return send_email(
        to_email,
        f"Verify your {app_name} account",
        "Welcome!\n\n"
        f"Confirm your e-mail address by opening:\n{_link('/verify-email/' + token)}\n\n"
        "If you did not create an account you can ignore this message.",
    )


def send_password_reset_email(to_email: str, token: str):
    minutes = current_app.config.get("RESET_TOKEN_TTL_MINUTES", 60)
    return send_email(
        to_email,
        "Reset your password",
        "We received a request to reset your password.\n\n"
        f"Choose a new one here (valid for {minutes} minutes):\n"
        f"{_link('/reset-password?token=' + token)}\n\n"
        "If you did not ask for this you can ignore this message.",
    )


def send_welcome_email(to_email: str, name: str = None):
    app_name = current_app.config.get("APP_NAME", "BackOffice")
    return send_email(
        to_email,
        "Your account is active",
        f"Hi {name or 'there'},\n\nYour {app_name} account is verified and ready to use.",
    )


def send_password_changed_email(to_email: str, name: str = None):
    return send_email(
        to_email,
        "Your password was changed",
        f"Hi {name or 'there'},\n\nThe password of your account was just changed. "
        "If this was not you, reset your password immediately and contact support.",
    )
