"""
Email and SMS notifications.

Every public method is best-effort: failures are logged and reported as
``False``, never raised, so callers can fire and forget.
"""
from email.message import EmailMessage
import logging
import re
import smtplib
from typing import Any, Dict, Optional

from twilio.rest import Client

import settings

logger = logging.getLogger(__name__)


def format_phone(phone: Optional[str], country_code: str = settings.SMS_DEFAULT_COUNTRY_CODE) -> Optional[str]:
    if not phone:
        return None
    cleaned = re.sub(r"[^\d+]", "", phone)
    if not cleaned:
        return None
    if cleaned.startswith("+"):
        return cleaned
    return country_code + cleaned.lstrip("0")


class EmailSender:
    def __init__(
        self,
        host: Optional[str] = settings.SMTP_HOST,
        port: int = settings.SMTP_PORT,
        user: Optional[str] = settings.SMTP_USER,
        password: Optional[str] = settings.SMTP_PASSWORD,
        sender: Optional[str] = settings.EMAIL_FROM,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    def send(self, to: str, subject: str, html: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(re.sub(r"<[^>]+>", "", html))
        msg.add_alternative(html, subtype="html")
        with smtplib.SMTP_SSL(self.host, self.port, timeout=15) as smtp:
            smtp.login(self.user, self.password)
            smtp.send_message(msg)


class SmsSender:
    def __init__(
        self,
        account_sid: Optional[str] = settings.TWILIO_ACCOUNT_SID,
        auth_token: Optional[str] = settings.TWILIO_AUTH_TOKEN,
        from_number: Optional[str] = settings.TWILIO_PHONE_NUMBER,
    ):
        self.from_number = from_number
        self.client = Client(account_sid, auth_token) if account_sid and auth_token and from_number else None

    @property
    def configured(self) -> bool:
        return self.client is not None

    def send(self, to: str, body: str) -> str:
        message = self.client.messages.create(body=body, from_=self.from_number, to=to)
        return message.sid


class Notifier:
    def __init__(self, email: Optional[EmailSender] = None, sms: Optional[SmsSender] = None):
        self.email = email or EmailSender()
        self.sms = sms or SmsSender()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _email(self, to: Optional[str], subject: str, html: str) -> bool:
        if not to:
            return False
        if not self.email.configured:
            logger.warning("Email not configured, skipping %r to %s", subject, to)
            return False
        try:
            self.email.send(to, subject, html)
        except Exception as e:
            logger.warning("Failed to send %r to %s: %s", subject, to, e)
            return False
        logger.info("Sent %r to %s", subject, to)
        return True

    def _sms(self, phone: Optional[str], body: str) -> bool:
        to = format_phone(phone)
        if not to or not self.sms.configured:
            return False
        try:
            sid = self.sms.send(to, body)
        except Exception as e:
            logger.warning("Failed to send SMS to %s: %s", to, e)
            return False
        logger.info("Sent SMS %s to %s", sid, to)
        return True

    # ------------------------------------------------------------------
    # Order lifecycle
    # ------------------------------------------------------------------

    def order_confirmed(self, user: Dict[str, Any], order: Dict[str, Any]) -> bool:
        name = user.get("name") or "Customer"
        rows = "".join(
            f"<tr><td>{(line.get('product') or {}).get('name', line['product_id'])}</td>"
            f"<td>{line['quantity']}</td><td>{line['price']:.2f}</td></tr>"
            for line in order.get("items", [])
        )
        html = (
            f"<h2>Hi {name}, your order has been placed!</h2>"
            f"<p>Order <strong>#{order['id']}</strong></p>"
            f"<table><tr><th>Item</th><th>Qty</th><th>Price</th></tr>{rows}</table>"
            f"<p>Total: <strong>{order['total_amount']:.2f}</strong></p>"
        )
        sent = self._email(user.get("email"), "Order Confirmation - Your Order Has Been Placed", html)
        self._sms(
            user.get("phone"),
            f"Hi {name}! Your order #{order['id']} has been confirmed. "
            "We'll notify you when it ships. Thank you for shopping with us!",
        )
        return sent

    def order_shipped(self, user: Dict[str, Any], order: Dict[str, Any]) -> bool:
        name = user.get("name") or "Customer"
        tracking = order.get("tracking") or {}
        html = (
            f"<h2>Hi {name}, your order is on its way!</h2>"
            f"<p>Order <strong>#{order['id']}</strong> has been shipped.</p>"
            f"<p>Carrier: {tracking.get('carrier', '')}<br>"
            f"Tracking number: <strong>{tracking.get('trackingNumber', '')}</strong><br>"
            f"Estimated delivery: {tracking.get('estimatedDelivery', '')}</p>"
        )
        sent = self._email(user.get("email"), "Your Order Has Been Shipped!", html)
        self._sms(
            user.get("phone"),
            f"Hi {name}! Your order #{order['id']} has been shipped. "
            f"Tracking number: {tracking.get('trackingNumber', '')}.",
        )
        return sent

    def order_out_for_delivery(self, user: Dict[str, Any], order: Dict[str, Any]) -> bool:
        name = user.get("name") or "Customer"
        return self._sms(user.get("phone"), f"Hi {name}! Your order #{order['id']} is out for delivery today.")

    def order_delivered(self, user: Dict[str, Any], order: Dict[str, Any]) -> bool:
        name = user.get("name") or "Customer"
        html = (
            f"<h2>Hi {name}, your order has been delivered!</h2>"
            f"<p>Order <strong>#{order['id']}</strong> was delivered. We hope you enjoy it.</p>"
        )
        sent = self._email(user.get("email"), "Your Order Has Been Delivered!", html)
        self._sms(user.get("phone"), f"Hi {name}! Your order #{order['id']} has been delivered. Enjoy!")
        return sent

    def order_cancelled(self, user: Dict[str, Any], order: Dict[str, Any]) -> bool:
        name = user.get("name") or "Customer"
        return self._sms(user.get("phone"), f"Hi {name}, your order #{order['id']} has been cancelled.")

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def reset_otp(self, email: str, otp: str) -> bool:
        html = (
            "<h2>Password Reset</h2>"
            "<p>We received a request to reset your password. Use this code to proceed:</p>"
            f"<h1 style=\"letter-spacing: 5px\">{otp}</h1>"
            f"<p>This code is valid for {settings.OTP_TTL_MINUTES} minutes. Do not share it with anyone.</p>"
        )
        return self._email(email, "Your Password Reset OTP", html)

    def password_reset(self, email: str) -> bool:
        html = (
            "<h2>Your password has been reset</h2>"
            "<p>If you did not do this, contact support immediately.</p>"
        )
        return self._email(email, "Your Password Has Been Reset", html)
