"""
Channel transport for follow-up messages (email, sms, whatsapp, dashboard).

The rule runner prepares the message; providers here only move it. Every
send returns a ``SendOutcome`` and never raises, so a flaky provider is
recorded as a failed delivery and retried by the next tick.
"""

from __future__ import annotations

import logging
import os
import smtplib
import uuid
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional

import requests

from ..core.config import settings
from .delivery_ledger import SendOutcome


logger = logging.getLogger("channels")

CHANNELS = ("email", "sms", "whatsapp", "dashboard")


class ChannelProvider:
    def send(self, to: str, subject: str, body: str, *, sender: Optional[str] = None) -> Optional[str]:
        raise NotImplementedError


class LogProvider(ChannelProvider):
    def __init__(self, channel: str) -> None:
        self.channel = channel

    def send(self, to: str, subject: str, body: str, *, sender: Optional[str] = None) -> Optional[str]:
        logger.info("Log %s to=%s subject=%s body=%s", self.channel, to, subject, body)
        return f"log-{uuid.uuid4().hex[:12]}"


class UnavailableProvider(ChannelProvider):
    def __init__(self, reason: str) -> None:
        self.reason = reason

    def send(self, to: str, subject: str, body: str, *, sender: Optional[str] = None) -> Optional[str]:
        raise RuntimeError(self.reason)


class EmailSMTPProvider(ChannelProvider):
    """
    SMTP email provider.

    For MailHog:
        SMTP_HOST=127.0.0.1
        SMTP_PORT=1025
        SMTP_USE_TLS=false
    """

    def __init__(self) -> None:
        self.host = os.getenv("SMTP_HOST") or settings.smtp_host
        self.port = int(os.getenv("SMTP_PORT") or settings.smtp_port or 587)
        self.user = os.getenv("SMTP_USER") or settings.smtp_user
        self.password = os.getenv("SMTP_PASSWORD") or settings.smtp_password
        self.sender = os.getenv("SMTP_FROM") or settings.smtp_from or self.user or "followup@localhost"

        raw_tls = os.getenv("SMTP_USE_TLS", "").lower().strip()
        if raw_tls in {"0", "false", "no"}:
            self.starttls = False
        elif raw_tls in {"1", "true", "yes"}:
            self.starttls = True
        else:
            self.starttls = False if self.port == 1025 else True

        logger.info("SMTP config loaded host=%s port=%s starttls=%s", self.host, self.port, self.starttls)

    def send(self, to: str, subject: str, body: str, *, sender: Optional[str] = None) -> Optional[str]:
        if not self.host:
            raise RuntimeError("SMTP_HOST is not configured")
        msg = EmailMessage()
        message_id = f"<{uuid.uuid4().hex}@followup>"
        msg["Subject"] = subject
        msg["From"] = sender or self.sender
        msg["To"] = to
        msg["Message-ID"] = message_id
        msg.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=8) as server:
            server.ehlo()
            if self.starttls:
                server.starttls()
                server.ehlo()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.send_message(msg)
        return message_id


class WebhookProvider(ChannelProvider):
    """POSTs ``{channel, to, subject, message}`` to an SMS/WhatsApp gateway."""

    def __init__(self, channel: str, url: str, token: Optional[str] = None) -> None:
        self.channel = channel
        self.url = url
        self.token = token

    def send(self, to: str, subject: str, body: str, *, sender: Optional[str] = None) -> Optional[str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {"channel": self.channel, "to": to, "subject": subject, "message": body}
        try:
            response = requests.post(self.url, json=payload, headers=headers, timeout=(5, 20))
        except requests.RequestException as exc:
            raise RuntimeError(f"{self.channel} webhook request failed: {exc}") from exc
        if response.status_code // 100 != 2:
            raise RuntimeError(f"{self.channel} webhook failed status={response.status_code} detail={response.text[:200]}")
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict):
            message_id = data.get("id") or data.get("message_id")
            return str(message_id) if message_id else None
        return None


@dataclass
class ChannelSender:
    email: ChannelProvider
    sms: ChannelProvider
    whatsapp: ChannelProvider
    dashboard: ChannelProvider

    def send(
        self,
        channel: str,
        contact: str,
        subject: str,
        body: str,
        *,
        sender: Optional[str] = None,
    ) -> SendOutcome:
        channel = (channel or "").lower()
        if channel not in CHANNELS:
            return SendOutcome(success=False, error=f"Unsupported channel: {channel}")
        provider: ChannelProvider = getattr(self, channel)
        try:
            message_id = provider.send(contact, subject, body, sender=sender)
        except Exception as exc:
            logger.warning("Channel send failed channel=%s to=%s err=%s", channel, contact, exc)
            return SendOutcome(success=False, error=str(exc))
        return SendOutcome(success=True, provider_message_id=message_id)


def _webhook_provider(channel: str, url: Optional[str], token: Optional[str]) -> ChannelProvider:
    if not url:
        reason = f"{channel} transport not configured ({channel.upper()}_WEBHOOK_URL missing)"
        logger.error(reason)
        return UnavailableProvider(reason)
    return WebhookProvider(channel, url, token)


def build_channel_sender() -> ChannelSender:
    smtp_host = (os.getenv("SMTP_HOST") or settings.smtp_host or "").strip()
    if not smtp_host:
        logger.error("SMTP_HOST missing; using log provider for email.")
        email: ChannelProvider = LogProvider("email")
    else:
        email = EmailSMTPProvider()
    token = os.getenv("CHANNEL_WEBHOOK_TOKEN") or settings.channel_webhook_token
    sms = _webhook_provider("sms", os.getenv("SMS_WEBHOOK_URL") or settings.sms_webhook_url, token)
    whatsapp = _webhook_provider("whatsapp", os.getenv("WHATSAPP_WEBHOOK_URL") or settings.whatsapp_webhook_url, token)
    sender = ChannelSender(email=email, sms=sms, whatsapp=whatsapp, dashboard=LogProvider("dashboard"))
    logger.info(
        "Providers selected: email=%s sms=%s whatsapp=%s",
        type(email).__name__,
        type(sms).__name__,
        type(whatsapp).__name__,
    )
    return sender
