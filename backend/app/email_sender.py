"""SMTP delivery of billing notices."""
import os
import logging
import smtplib
import asyncio
from concurrent.futures import ThreadPoolExecutor
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=2)

FOOTER = "ProManage - Property & Rent Management"


def get_smtp_config():
    """Get SMTP configuration from environment variables at call time."""
    return {
        "host": os.getenv("SMTP_HOST", "smtp.gmail.com"),
        "port": int(os.getenv("SMTP_PORT", "587")),
        "user": os.getenv("SMTP_USER", ""),
        "password": os.getenv("SMTP_PASSWORD", ""),
        "from_email": os.getenv("SMTP_FROM_EMAIL", ""),
        "frontend_url": os.getenv("FRONTEND_URL", "http://localhost:5173"),
    }


def is_email_configured() -> bool:
    config = get_smtp_config()
    return bool(config["user"] and config["password"])


def render_billing_notice(name: str, title: str, message: str, action_url: Optional[str]) -> tuple[str, str]:
    """Render the HTML and plain-text bodies of a billing notice."""
    link = f"{get_smtp_config()['frontend_url']}{action_url}" if action_url else None

    button = ""
    if link:
        button = (
            f'<p><a href="{escape(link)}" style="display:inline-block;padding:12px 24px;'
            f'background-color:#10b981;color:white;text-decoration:none;border-radius:6px">'
            f"Manage subscription</a></p>"
        )
    html_body = (
        f'<div style="font-family:Arial,sans-serif;line-height:1.6;color:#333;max-width:600px">'
        f"<h2>{escape(title)}</h2>"
        f"<p>Hi {escape(name)},</p>"
        f"<p>{escape(message)}</p>"
        f"{button}"
        f'<p style="margin-top:30px;font-size:12px;color:#666">{FOOTER}</p>'
        f"</div>"
    )

    lines = [title, "", f"Hi {name},", "", message]
    if link:
        lines += ["", link]
    lines += ["", FOOTER]
    return html_body, "\n".join(lines)


def _deliver(to_email: str, subject: str, html_body: str, text_body: str) -> bool:
    """Blocking SMTP send; runs in the threadpool."""
    config = get_smtp_config()
    if not config["user"] or not config["password"]:
        logger.warning("[Email] SMTP not configured, skipping billing notice")
        return False

    from_email = config["from_email"] or config["user"]
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = from_email
    msg["To"] = to_email
    msg.attach(MIMEText(text_body, "plain"))
    msg.attach(MIMEText(html_body, "html"))

    try:
        with smtplib.SMTP(config["host"], config["port"]) as server:
            server.starttls()
            server.login(config["user"], config["password"])
            server.sendmail(from_email, to_email, msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"[Email] Failed to send billing notice to {to_email}: {e}")
        return False

    logger.info(f"[Email] Sent billing notice '{subject}' to {to_email}")
    return True


async def send_billing_notice_email(
    to_email: str, name: str, title: str, message: str, action_url: Optional[str] = None
) -> bool:
    """Send a subscription/billing notice by email without blocking the event loop."""
    html_body, text_body = render_billing_notice(name, title, message, action_url)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, _deliver, to_email, title, html_body, text_body)
