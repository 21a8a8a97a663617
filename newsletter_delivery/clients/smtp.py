"""SMTP mail gateway built on aiosmtplib.

Every failure is mapped to TransientDeliveryError or PermanentDeliveryError;
the delivery worker trusts that classification when deciding between a
backoff retry and dead-lettering the task.
"""

from __future__ import annotations

from dataclasses import dataclass
from email.message import EmailMessage

import aiosmtplib

from newsletter_delivery.domain.errors import (
    DomainValidationError,
    GatewayError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from newsletter_delivery.domain.subscribers import parse_subscriber_email

IMPLICIT_TLS_PORT = 465
RATE_LIMIT_CODE = 421
# Mailbox unavailable, user not local, mailbox name not allowed.
INVALID_RECIPIENT_CODES = frozenset({550, 551, 553})


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    sender: str
    port: int = 587
    username: str | None = None
    password: str | None = None
    use_tls: bool = True
    timeout_seconds: float = 30.0


def classify_smtp_error(exc: Exception) -> GatewayError:
    """Map an aiosmtplib or network failure to a delivery error."""
    if isinstance(exc, (aiosmtplib.SMTPTimeoutError, TimeoutError)):
        return TransientDeliveryError(f"smtp timeout: {exc}", error_code="gateway_timeout")

    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        codes = [refused.code for refused in exc.recipients]
        if codes and all(400 <= code < 500 for code in codes):
            return TransientDeliveryError(f"recipient deferred: {exc}", error_code="gateway_unavailable")
        return PermanentDeliveryError(f"recipient refused: {exc}", error_code="invalid_recipient")

    if isinstance(exc, aiosmtplib.SMTPResponseException):
        code = exc.code
        if code == RATE_LIMIT_CODE:
            return TransientDeliveryError(f"smtp throttled: {exc}", error_code="gateway_rate_limited")
        if 400 <= code < 500:
            return TransientDeliveryError(f"smtp temporary failure: {exc}", error_code="gateway_unavailable")
        if code in INVALID_RECIPIENT_CODES:
            return PermanentDeliveryError(f"smtp rejected recipient: {exc}", error_code="invalid_recipient")
        if 500 <= code < 600:
            return PermanentDeliveryError(f"smtp permanent failure: {exc}", error_code="gateway_rejected")

    if isinstance(exc, (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected, OSError)):
        return TransientDeliveryError(f"smtp connection failed: {exc}", error_code="gateway_unavailable")

    # Unknown errors are retried; the attempt ceiling still bounds them.
    return TransientDeliveryError(f"smtp error: {exc}", error_code="gateway_unavailable")


def build_message(*, sender: str, to: str, subject: str, html: str, text: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message.set_content(text)
    message.add_alternative(html, subtype="html")
    return message


@dataclass
class SmtpMailGateway:
    settings: SmtpSettings

    async def send(self, *, to: str, subject: str, html: str, text: str) -> None:
        try:
            recipient = parse_subscriber_email(to)
        except DomainValidationError as exc:
            raise PermanentDeliveryError(str(exc), error_code="invalid_recipient") from exc

        message = build_message(
            sender=self.settings.sender,
            to=recipient,
            subject=subject,
            html=html,
            text=text,
        )
        implicit_tls = self.settings.use_tls and self.settings.port == IMPLICIT_TLS_PORT
        try:
            await aiosmtplib.send(
                message,
                hostname=self.settings.host,
                port=self.settings.port,
                username=self.settings.username,
                password=self.settings.password,
                use_tls=implicit_tls,
                start_tls=self.settings.use_tls and not implicit_tls,
                timeout=self.settings.timeout_seconds,
            )
        except Exception as exc:
            raise classify_smtp_error(exc) from exc
