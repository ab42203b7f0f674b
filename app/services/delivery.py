"""
Delivery collaborator: sends one-time codes over SMS or email.

A failed dispatch is reported to the caller immediately. Nothing here retries
in the background, so a code is never delivered after the user asked for a
newer one.
"""

import asyncio
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

import httpx

from app.core.config import settings
from app.logging import get_logger, mask_identifier
from app.models.otp import OTPChannel

logger = get_logger("delivery")


class DeliveryError(Exception):
    """Raised when a channel could not hand the message to its provider"""

    def __init__(self, channel: OTPChannel, message: str):
        self.channel = channel
        super().__init__(message)


class Delivery(Protocol):
    async def send(self, channel: OTPChannel, identifier: str, message: str) -> None:
        ...


class SMSSender:
    """SMS over an HTTP gateway (JSON POST, bearer token)"""

    def __init__(self, api_url: str, token: Optional[str], sender: str = "MSLS", timeout: float = 10.0):
        self.api_url = api_url
        self.token = token
        self.sender = sender
        self.timeout = timeout

    async def send_message(self, phone: str, text: str) -> None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        data = {"to": phone, "from": self.sender, "text": text}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, headers=headers, json=data)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"SMS gateway error: {e}", exc_info=False, to=mask_identifier(phone))
            raise DeliveryError(OTPChannel.SMS, "SMS gateway rejected message") from e


class EmailSender:
    """Email over SMTP with STARTTLS, run in a worker thread"""

    def __init__(
        self,
        server: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        from_email: Optional[str] = None,
        from_name: str = "MSLS",
        timeout: float = 10.0,
    ):
        self.server = server
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email or username
        self.from_name = from_name
        self.timeout = timeout

    def _build(self, email: str, text: str) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = email
        msg["Subject"] = f"{self.from_name} verification code"
        body = f"""
        <html>
            <body>
                <h2>Verification code</h2>
                <p>{text}</p>
                <p>If you did not request this code, ignore this email.</p>
                <hr>
                <p><small>{self.from_name} - do not reply to this email</small></p>
            </body>
        </html>
        """
        msg.attach(MIMEText(body, "html"))
        return msg

    def _send_sync(self, email: str, text: str) -> None:
        msg = self._build(email, text)
        with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as server:
            server.starttls()
            server.login(self.username, self.password)
            server.sendmail(self.from_email, email, msg.as_string())

    async def send_message(self, email: str, text: str) -> None:
        if not self.username or not self.password:
            logger.error("SMTP credentials not configured", exc_info=False)
            raise DeliveryError(OTPChannel.EMAIL, "SMTP credentials not configured")
        try:
            await asyncio.to_thread(self._send_sync, email, text)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error: {e}", exc_info=False, to=mask_identifier(email))
            raise DeliveryError(OTPChannel.EMAIL, "SMTP server rejected message") from e


class ProviderDelivery:
    """Routes each channel to its real provider"""

    def __init__(self, sms: Optional[SMSSender], email: EmailSender):
        self.sms = sms
        self.email = email

    async def send(self, channel: OTPChannel, identifier: str, message: str) -> None:
        if channel == OTPChannel.SMS:
            if self.sms is None:
                logger.error("SMS gateway not configured", exc_info=False)
                raise DeliveryError(OTPChannel.SMS, "SMS gateway not configured")
            await self.sms.send_message(identifier, message)
        else:
            await self.email.send_message(identifier, message)
        logger.info("Code dispatched", channel=channel.value, to=mask_identifier(identifier))


class ConsoleDelivery:
    """Prints messages to stdout (development only)"""

    async def send(self, channel: OTPChannel, identifier: str, message: str) -> None:
        print("=== SIMULATED DELIVERY ===")
        print(f"Channel: {channel.value}")
        print(f"To: {identifier}")
        print(f"Message: {message}")
        print("==========================")
        logger.info("Simulated code dispatch", channel=channel.value, to=mask_identifier(identifier))


def build_delivery() -> Delivery:
    if settings.DELIVERY_BACKEND != "provider":
        return ConsoleDelivery()
    sms = None
    if settings.SMS_API_URL:
        sms = SMSSender(
            settings.SMS_API_URL,
            settings.SMS_API_TOKEN,
            sender=settings.SMS_SENDER,
            timeout=settings.DELIVERY_TIMEOUT_SECONDS,
        )
    email = EmailSender(
        settings.SMTP_SERVER,
        settings.SMTP_PORT,
        settings.SMTP_USERNAME,
        settings.SMTP_PASSWORD,
        from_email=settings.SMTP_FROM_EMAIL,
        from_name=settings.SMTP_FROM_NAME,
        timeout=settings.DELIVERY_TIMEOUT_SECONDS,
    )
    return ProviderDelivery(sms, email)
