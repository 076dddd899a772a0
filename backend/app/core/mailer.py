"""
Async-safe email sender for reservation notifications.

smtplib is blocking; every send runs in asyncio.get_running_loop().run_in_executor
so that the FastAPI event loop is never blocked waiting for SMTP. Unlike a
best-effort helper, send_email raises on delivery failure: the caller decides
whether a failure matters.
"""
import asyncio
import html
import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from app.core.config import settings

logger = logging.getLogger("giftregistry.mailer")


@dataclass(frozen=True)
class EmailContent:
    subject: str
    text_body: str
    html_body: str


def _get_base_html_template(title: str, content_html: str) -> str:
    """
    Base HTML layout for registry emails.

    content_html must already be escaped: user-provided values go through
    html.escape() in the builders below.
    """
    safe_title = html.escape(title)
    return f'''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{safe_title}</title>
</head>
<body style="margin: 0; padding: 0; background-color: #f3f4f6; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif;">
    <table role="presentation" width="100%" cellspacing="0" cellpadding="0" style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <tr>
            <td style="background-color: #ffffff; border-radius: 16px; padding: 40px;">
                <h2 style="margin: 0 0 20px 0; font-size: 22px; color: #1f2937; text-align: center;">
                    {safe_title}
                </h2>
                <div style="color: #4b5563; font-size: 16px; line-height: 1.6;">
                    {content_html}
                </div>
                <div style="margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; text-align: center;">
                    <p style="margin: 0; color: #9ca3af; font-size: 14px;">
                        This is an automated notification from {html.escape(settings.app_name)}
                    </p>
                </div>
            </td>
        </tr>
    </table>
</body>
</html>'''


def _item_block(item_name: str, list_title: str) -> str:
    return f'''
    <div style="background-color: #f9fafb; border-radius: 12px; padding: 20px; margin: 20px 0;">
        <p style="margin: 0 0 12px 0; color: #6b7280; font-size: 14px;">Gift:</p>
        <p style="margin: 0 0 16px 0; font-size: 18px; font-weight: 600; color: #1f2937;">{html.escape(item_name)}</p>
        <p style="margin: 0 0 8px 0; color: #6b7280; font-size: 14px;">Wish list:</p>
        <p style="margin: 0; font-size: 16px; color: #4b5563;">{html.escape(list_title)}</p>
    </div>
    '''


def build_reservation_removed_email(item_name: str, list_title: str) -> EmailContent:
    title = "Your reserved gift item has been removed"
    text_body = (
        "The owner removed a gift you had reserved, so your reservation no longer applies.\n\n"
        f"Gift: {item_name}\n"
        f"Wish list: {list_title}\n"
    )
    content = (
        "<p>The owner removed a gift you had reserved, so your reservation no longer applies.</p>"
        + _item_block(item_name, list_title)
    )
    return EmailContent(title, text_body, _get_base_html_template(title, content))


def build_reservation_cancelled_email(item_name: str, list_title: str) -> EmailContent:
    title = "Your reservation has been cancelled"
    text_body = (
        "The wish list owner cancelled your reservation.\n\n"
        f"Gift: {item_name}\n"
        f"Wish list: {list_title}\n"
    )
    content = "<p>The wish list owner cancelled your reservation.</p>" + _item_block(item_name, list_title)
    return EmailContent(title, text_body, _get_base_html_template(title, content))


def build_purchase_confirmation_email(
    item_name: str,
    list_title: str,
    guest_name: Optional[str] = None,
) -> EmailContent:
    title = "Gift Purchased - Thank you!"
    greeting = f"Hello {guest_name}," if guest_name else "Hello,"
    text_body = (
        f"{greeting}\n\n"
        f"The wish list owner has confirmed that the gift \"{item_name}\" "
        f"from the wish list \"{list_title}\" has been purchased.\n\n"
        "Thank you for your thoughtful gift!"
    )
    content = (
        f"<p>{html.escape(greeting)}</p>"
        "<p>The wish list owner has confirmed that this gift has been purchased.</p>"
        + _item_block(item_name, list_title)
        + "<p>Thank you for your thoughtful gift!</p>"
    )
    return EmailContent(title, text_body, _get_base_html_template(title, content))


def _build_message(to_email: str, content: EmailContent) -> MIMEMultipart:
    message = MIMEMultipart("alternative")
    message["Subject"] = content.subject
    message["From"] = settings.smtp_from_email
    message["To"] = to_email
    message.attach(MIMEText(content.text_body, "plain", "utf-8"))
    message.attach(MIMEText(content.html_body, "html", "utf-8"))
    return message


def _send_sync(message: MIMEMultipart) -> None:
    """Blocking SMTP send – must be run in an executor."""
    if settings.smtp_use_tls:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as server:
            server.starttls()
            if settings.smtp_username:
                server.login(settings.smtp_username, settings.smtp_password)
            server.send_message(message)
    else:
        with smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=15) as server:
            if settings.smtp_username:
                server.login(settings.smtp_username, settings.smtp_password)
            server.send_message(message)


async def send_email(to_email: str, content: EmailContent) -> bool:
    """
    Deliver one email. Returns False when delivery is switched off,
    True when handed to SMTP; SMTP errors propagate.
    """
    if not settings.email_notifications_enabled:
        logger.info("Email notifications disabled. Skipping email to %s: %s", to_email, content.subject)
        return False
    if not settings.smtp_host:
        logger.info("SMTP not configured. Email for %s would be sent: %s", to_email, content.subject)
        return False

    message = _build_message(to_email, content)
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, _send_sync, message)
    logger.info("Email sent to %s subject=%r", to_email, content.subject)
    return True
