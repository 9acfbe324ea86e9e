from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Dict, Optional, Protocol

import httpx

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.codes import mask_email, mask_phone

logger = get_logger(__name__)

EMAIL = "email"
SMS = "sms"


@dataclass
class DeliveryMessage:
    subject: str
    text: str
    html: Optional[str] = None
    kind: str = "notification"


@dataclass
class DeliveryResult:
    success: bool
    provider: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DeliveryChannel(Protocol):
    name: str

    async def send(self, destination: str, message: DeliveryMessage) -> DeliveryResult: ...


def _redact(destination: str) -> str:
    return mask_email(destination) if "@" in destination else mask_phone(destination)


class LoggingChannel:
    """Logs messages instead of sending them (development)."""

    name = "log"

    async def send(self, destination: str, message: DeliveryMessage) -> DeliveryResult:
        logger.info(
            "delivery_dev_mode",
            to=_redact(destination),
            subject=message.subject,
            kind=message.kind,
            body_preview=message.text[:200],
        )
        return DeliveryResult(success=True, provider=self.name)


class SMTPEmailChannel:
    """Email over SMTP with STARTTLS or implicit TLS.

    Falls back to logging when host or sender is not configured.
    """

    name = "smtp"

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "SMP Auth",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout
        self._fallback = LoggingChannel()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SMTPEmailChannel":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout=settings.delivery_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    async def send(self, destination: str, message: DeliveryMessage) -> DeliveryResult:
        if not self.is_configured:
            return await self._fallback.send(destination, message)
        return await asyncio.to_thread(self._send_email, destination, message)

    def _send_email(self, to_email: str, message: DeliveryMessage) -> DeliveryResult:
        message_id = make_msgid()
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(message.text, "plain"))
        if message.html:
            msg.attach(MIMEText(message.html, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=mask_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", to=mask_email(to_email), host=self.smtp_host, error=str(e))
            return DeliveryResult(success=False, provider=self.name, error="smtp_auth_failed")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=mask_email(to_email), error=str(e))
            return DeliveryResult(success=False, provider=self.name, error="recipient_refused")
        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_send_failed", to=mask_email(to_email), host=self.smtp_host, error=str(e))
            return DeliveryResult(success=False, provider=self.name, error="smtp_error")

        logger.info("email_sent", to=mask_email(to_email), subject=message.subject, kind=message.kind)
        return DeliveryResult(success=True, provider=self.name, message_id=message_id)


class TwilioSMSChannel:
    """SMS through the Twilio Messages REST API."""

    name = "twilio"
    API_BASE = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.http = http_client or httpx.AsyncClient(timeout=timeout)

    async def send(self, destination: str, message: DeliveryMessage) -> DeliveryResult:
        url = f"{self.API_BASE}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = await self.http.post(
                url,
                data={"To": destination, "From": self.from_number, "Body": message.text},
                auth=(self.account_sid, self.auth_token),
            )
        except httpx.HTTPError as exc:
            logger.error("sms_send_failed", to=mask_phone(destination), error=str(exc))
            return DeliveryResult(success=False, provider=self.name, error="transport_error")
        if response.status_code >= 400:
            logger.error("sms_rejected", to=mask_phone(destination), status_code=response.status_code)
            return DeliveryResult(success=False, provider=self.name, error=f"http_{response.status_code}")
        logger.info("sms_sent", to=mask_phone(destination), kind=message.kind)
        return DeliveryResult(success=True, provider=self.name, message_id=response.json().get("sid"))

    async def close(self) -> None:
        await self.http.aclose()


class Notifier:
    """Routes rendered auth messages to the channel registered per kind."""

    def __init__(self, channels: Optional[Dict[str, DeliveryChannel]] = None, *, app_name: str = "SMP Auth") -> None:
        self.channels: Dict[str, DeliveryChannel] = dict(channels or {})
        self.app_name = app_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "Notifier":
        channels: Dict[str, DeliveryChannel] = {EMAIL: SMTPEmailChannel.from_settings(settings)}
        if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number:
            channels[SMS] = TwilioSMSChannel(
                account_sid=settings.twilio_account_sid,
                auth_token=settings.twilio_auth_token,
                from_number=settings.twilio_from_number,
                timeout=settings.delivery_timeout_seconds,
            )
        else:
            channels[SMS] = LoggingChannel()
        return cls(channels, app_name=settings.mfa_issuer)

    def register_channel(self, kind: str, channel: DeliveryChannel) -> None:
        self.channels[kind] = channel

    async def send(self, kind: str, destination: str, message: DeliveryMessage) -> DeliveryResult:
        channel = self.channels.get(kind)
        if channel is None:
            logger.error("delivery_channel_missing", kind=kind)
            return DeliveryResult(success=False, provider="none", error=f"no {kind} channel")
        try:
            return await channel.send(destination, message)
        except Exception as exc:
            # Delivery is a side channel; callers decide what a failed send means
            logger.error("delivery_failed", kind=kind, provider=channel.name, error=str(exc))
            return DeliveryResult(success=False, provider=channel.name, error=str(exc))

    async def send_mfa_code(self, kind: str, destination: str, code: str, *, expires_minutes: int) -> DeliveryResult:
        text = f"Your {self.app_name} verification code is {code}. It expires in {expires_minutes} minutes."
        message = DeliveryMessage(
            subject=f"{self.app_name} verification code",
            text=text,
            html=f"<p>Your verification code is <strong>{code}</strong>.</p><p>It expires in {expires_minutes} minutes.</p>",
            kind="mfa_code",
        )
        return await self.send(kind, destination, message)

    async def send_magic_link(self, email: str, url: str, *, action: str, expires_at: datetime) -> DeliveryResult:
        subjects = {
            "login": f"Sign in to {self.app_name}",
            "register": f"Finish creating your {self.app_name} account",
            "verify_email": "Verify your email address",
            "reset_password": "Reset your password",
        }
        expiry = expires_at.strftime("%Y-%m-%d %H:%M UTC")
        message = DeliveryMessage(
            subject=subjects.get(action, f"Your {self.app_name} link"),
            text=f"Use this link to continue: {url}\n\nThe link expires at {expiry} and works once.",
            html=f'<p><a href="{url}">Continue</a></p><p>The link expires at {expiry} and works once.</p>',
            kind="magic_link",
        )
        return await self.send(EMAIL, email, message)

    async def send_welcome(self, email: str, first_name: Optional[str] = None) -> DeliveryResult:
        greeting = f"Hi {first_name}," if first_name else "Hi,"
        message = DeliveryMessage(
            subject=f"Welcome to {self.app_name}",
            text=f"{greeting}\n\nYour account is ready.",
            kind="welcome",
        )
        return await self.send(EMAIL, email, message)

    async def close(self) -> None:
        for channel in self.channels.values():
            close = getattr(channel, "close", None)
            if close is not None:
                await close()
