from __future__ import annotations

import os
import subprocess
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Protocol

import httpx

from deadswitch.config import Settings
from deadswitch.domain.recipients import is_valid_mailbox, mailbox_of
from deadswitch.errors import ConfigurationError, DeliveryError
from deadswitch.security.redaction import sanitize_text

_STDERR_SNIPPET_LIMIT = 300


class Notifier(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> None: ...


def _header_safe(value: str) -> str:
    return value.replace("\r", "").replace("\n", "").strip()


def _envelope_address(recipient: str) -> str:
    address = mailbox_of(recipient)
    local, _, domain = address.rpartition("@")
    try:
        domain = domain.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return f"{local}@{domain}"


class SendmailNotifier:
    """Hands one plain-text message per recipient to a local sendmail binary."""

    def __init__(
        self,
        *,
        sendmail_path: str,
        mail_from: str,
        reply_to: str | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._sendmail_path = sendmail_path
        self._mail_from = _header_safe(mail_from)
        self._reply_to = _header_safe(reply_to) if reply_to else ""
        self._timeout_seconds = timeout_seconds

    def build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        if self._mail_from:
            message["From"] = self._mail_from
        if self._reply_to:
            message["Reply-To"] = self._reply_to
        message["To"] = _header_safe(recipient)
        message["Subject"] = _header_safe(subject)
        message["Date"] = formatdate(localtime=False)
        message["Message-ID"] = make_msgid(domain=mailbox_of(self._mail_from).rpartition("@")[2] or None)
        message["Auto-Submitted"] = "auto-generated"
        message.set_content(body, charset="utf-8", cte="8bit")
        return message

    def send(self, recipient: str, subject: str, body: str) -> None:
        envelope = _envelope_address(recipient)
        if not is_valid_mailbox(envelope):
            raise DeliveryError("sendmail: invalid recipient")
        if not os.access(self._sendmail_path, os.X_OK):
            raise DeliveryError(f"sendmail not found/executable at {self._sendmail_path}")

        payload = self.build_message(recipient, subject, body).as_bytes()
        try:
            completed = subprocess.run(
                [self._sendmail_path, "-i", "--", envelope],
                input=payload,
                capture_output=True,
                timeout=self._timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise DeliveryError(f"sendmail failed to run: {exc}") from exc
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            raise DeliveryError(
                f"sendmail failed (code {completed.returncode}): "
                f"{sanitize_text(stderr[:_STDERR_SNIPPET_LIMIT])}"
            )


class WebhookNotifier:
    """Posts each message as JSON to an HTTP endpoint (chat bridge, mail relay, ...)."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float | httpx.Timeout = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=5.0)
        )
        self.client = httpx.Client(timeout=resolved_timeout, transport=transport)

    def __enter__(self) -> WebhookNotifier:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def send(self, recipient: str, subject: str, body: str) -> None:
        try:
            response = self.client.post(
                self._url,
                json={"recipient": recipient, "subject": subject, "body": body},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DeliveryError(
                f"webhook rejected message status={exc.response.status_code}"
            ) from exc
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise DeliveryError(f"webhook unreachable: {type(exc).__name__}") from exc

    def close(self) -> None:
        self.client.close()


def build_notifier(settings: Settings) -> Notifier:
    if settings.notifier == "webhook":
        if not settings.webhook_url:
            raise ConfigurationError("WEBHOOK_URL is required when NOTIFIER=webhook")
        return WebhookNotifier(settings.webhook_url, timeout=settings.webhook_timeout_seconds)
    return SendmailNotifier(
        sendmail_path=settings.sendmail_path,
        mail_from=settings.mail_from,
        reply_to=settings.reply_to,
    )
