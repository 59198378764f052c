import os
import logging
from typing import Optional, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, To, From, Subject, HtmlContent, PlainTextContent

from app.core.settings import settings

logger = logging.getLogger("app.email")

_TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "..", "templates", "email")


def get_email_template_env() -> Environment:
    """Get Jinja2 environment for email templates."""
    return Environment(
        loader=FileSystemLoader(_TEMPLATE_DIR),
        autoescape=select_autoescape(["html", "xml"]),
    )


def get_sendgrid_client() -> Optional[SendGridAPIClient]:
    """Get SendGrid client if configured and log diagnostics (without leaking key)."""
    api_key = os.getenv("SENDGRID_API_KEY")
    if not api_key:
        logger.warning("[email] SENDGRID_API_KEY missing from environment")
        return None
    logger.debug(f"[email] SendGrid key loaded (length={len(api_key)})")
    if api_key.startswith("your_"):
        logger.warning("[email] SENDGRID_API_KEY appears to be a placeholder (starts with 'your_')")
        return None
    return SendGridAPIClient(api_key)


def render_automation_email(subject: str, message: str, recipient_name: str) -> Tuple[str, str]:
    """Wrap an automation message in the branded HTML layout; returns (html, plain)."""
    template = get_email_template_env().get_template("automation_message.html")
    html_content = template.render(
        subject=subject,
        message=message,
        recipient_name=recipient_name,
        app_name=settings.automation_app_name,
        app_url=settings.app_url,
    )
    plain_content = f"""
{subject}

{message}

Open {settings.automation_app_name}: {settings.app_url}
    """.strip()
    return html_content, plain_content


def send_email(to_email: str, subject: str, html_content: str,
               plain_content: str, from_email: str = None) -> bool:
    """Send email using SendGrid.

    Logging levels:
    - INFO: success
    - WARNING: configuration issues / skipped send
    - ERROR: failed send attempt with response diagnostics
    """
    client = get_sendgrid_client()
    if not client:
        logger.warning(f"[email] Skipping send (client unavailable) to={to_email}")
        return False

    from_email = from_email or settings.email_from_address
    message = Mail(
        from_email=From(from_email, settings.automation_app_name),
        to_emails=To(to_email),
        subject=Subject(subject),
        html_content=HtmlContent(html_content),
        plain_text_content=PlainTextContent(plain_content)
    )
    try:
        response = client.send(message)
    except Exception as e:  # sendgrid raises python_http_client errors of several types
        logger.error(f"[email] Exception during send to={to_email}: {e}", exc_info=True)
        return False

    status = getattr(response, "status_code", None)
    if status in (200, 202):
        logger.info(f"[email] Sent to={to_email} status={status}")
        return True

    body_snippet = None
    if getattr(response, "body", None):
        raw = response.body.decode() if hasattr(response.body, "decode") else str(response.body)
        body_snippet = raw[:500]
    logger.error(f"[email] Failed send to={to_email} status={status} body_snippet={body_snippet}")
    return False


def send_automation_email(to_email: str, recipient_name: str, subject: str, message: str) -> bool:
    html_content, plain_content = render_automation_email(subject, message, recipient_name)
    return send_email(to_email, subject, html_content, plain_content)
