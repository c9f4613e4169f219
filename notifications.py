"""
Outbound notifications: SMTP mail and WhatsApp OTP delivery, plus the message
bodies the registration flow sends.

Senders raise DownstreamError on failure. Every caller treats notifications as
best-effort and only logs that error.
"""
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

import requests

import config
from errors import DownstreamError

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, html: str) -> bool:
    """Send an HTML email. Returns False when no SMTP server is configured."""
    if not config.SMTP_HOST:
        logger.warning(f"SMTP_HOST not configured, skipping email to {to}: {subject}")
        return False
    msg = MIMEMultipart()
    msg["From"] = config.EMAIL_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg.attach(MIMEText(html, "html"))
    try:
        context = ssl.create_default_context()
        if config.SMTP_PORT == 465:
            with smtplib.SMTP_SSL(config.SMTP_HOST, config.SMTP_PORT, context=context) as server:
                if config.SMTP_USER:
                    server.login(config.SMTP_USER, config.SMTP_PASS)
                server.send_message(msg)
        else:
            with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT) as server:
                server.starttls(context=context)
                if config.SMTP_USER:
                    server.login(config.SMTP_USER, config.SMTP_PASS)
                server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise DownstreamError(f"Email to {to} failed", error=str(e)) from e
    logger.info(f"Email sent to {to}: {subject}")
    return True


def send_whatsapp_otp(contact_number: str, otp: str) -> bool:
    if not config.WHATSAPP_API_KEY:
        logger.warning(f"WHATSAPP_API_KEY not configured, skipping WhatsApp OTP to {contact_number}")
        return False
    payload = {
        "messaging_product": "whatsapp",
        "to": contact_number,
        "type": "template",
        "template": {
            "name": config.WHATSAPP_TEMPLATE,
            "language": {"code": "en_US"},
            "components": [
                {"type": "body", "parameters": [{"type": "text", "text": otp}]},
                {"type": "button", "sub_type": "url", "index": 0, "parameters": [{"type": "text", "text": otp}]},
            ],
        },
    }
    headers = {"Authorization": f"Bearer {config.WHATSAPP_API_KEY}"}
    try:
        response = requests.post(config.WHATSAPP_API_URL, json=payload, headers=headers, timeout=10)
        response.raise_for_status()
    except requests.RequestException as e:
        raise DownstreamError(f"WhatsApp OTP to {contact_number} failed", error=str(e)) from e
    logger.info(f"WhatsApp OTP sent to {contact_number}")
    return True


# Message bodies

def otp_email(otp: str) -> str:
    return (
        f"<p>Your OTP for UNMA 2026 registration is <strong>{escape(otp)}</strong>.</p>"
        f"<p>It will expire in {config.OTP_EXPIRY_MINUTES} minutes.</p>"
    )


def registration_confirmation_email(registration: dict) -> str:
    serial = registration.get("serialNumber")
    serial_line = f"<p>Your registration number is <strong>{serial}</strong>.</p>" if serial else ""
    return (
        f"<p>Dear {escape(registration.get('name') or 'Navodayan')},</p>"
        "<p>Thank you for registering for UNMA 2026. Your registration is complete.</p>"
        f"{serial_line}"
        f"<p>School: {escape(registration.get('school') or '-')}</p>"
    )


def payment_confirmation_email(registration: dict, transaction_id: str, amount) -> str:
    return (
        f"<p>Dear {escape(registration.get('name') or 'Navodayan')},</p>"
        f"<p>We have received your contribution of <strong>&#8377;{amount}</strong>.</p>"
        f"<p>Transaction ID: {escape(transaction_id)}</p>"
    )


def contact_confirmation_email(message: dict) -> str:
    return (
        f"<p>Dear {escape(message.get('name') or 'there')},</p>"
        f"<p>We received your message &ldquo;{escape(message.get('subject', ''))}&rdquo; "
        "and will get back to you soon.</p>"
    )


def contact_response_email(message: dict, response_message: str) -> str:
    return (
        f"<p>Dear {escape(message.get('name') or 'there')},</p>"
        f"<p>Regarding your message &ldquo;{escape(message.get('subject', ''))}&rdquo;:</p>"
        f"<p>{escape(response_message)}</p>"
    )


def send_registration_confirmation(registration: dict) -> bool:
    return send_email(
        registration["email"],
        "UNMA 2026 Registration Confirmation",
        registration_confirmation_email(registration),
    )


def send_payment_confirmation(registration: dict, transaction_id: str, amount) -> bool:
    return send_email(
        registration["email"],
        "UNMA 2026 Payment Confirmation",
        payment_confirmation_email(registration, transaction_id, amount),
    )
