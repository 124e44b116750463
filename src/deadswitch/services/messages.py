from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from deadswitch.config import Settings
from deadswitch.domain.actions import (
    NotificationAction,
    SendAckReminder,
    SendEscalation,
    SendReminder,
)
from deadswitch.domain.switch_config import is_valid_message_id
from deadswitch.errors import ConfigurationError
from deadswitch.obs.logging import get_logger
from deadswitch.security.tokens import build_action_url

logger = get_logger(__name__)

NEVER_CONFIRMED = "Never"
_ACK_PARAGRAPHS = (
    "Ack receipt by clicking:\n{ACK_URL}\n\n",
    "Ack receipt by clicking:\r\n{ACK_URL}\r\n\r\n",
)


@dataclass(frozen=True)
class RenderedMessage:
    recipient: str
    subject: str
    body: str


@dataclass(frozen=True)
class MessageTemplate:
    subject: str
    body: str


@dataclass(frozen=True)
class MailSettings:
    endpoint_url: str
    ack_enabled: bool
    subject_reminder: str
    body_reminder: str
    escalation: MessageTemplate
    timezone_name: str = "UTC"
    datetime_format: str = "%A, %d %B %Y, %H:%M:%S %Z"
    messages_path: Path | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> MailSettings:
        return cls(
            endpoint_url=settings.endpoint_url(),
            ack_enabled=settings.is_ack_effective(),
            subject_reminder=settings.subject_reminder,
            body_reminder=settings.body_reminder,
            escalation=MessageTemplate(settings.subject_escalate, settings.body_escalate),
            timezone_name=settings.mail_timezone,
            datetime_format=settings.mail_datetime_format,
            messages_path=settings.messages_path(),
        )


def resolve_timezone(name: str) -> tzinfo:
    candidate = (name or "").strip()
    if not candidate:
        return UTC
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def format_timestamp(ts: int, tz: tzinfo, fmt: str) -> str:
    try:
        return datetime.fromtimestamp(ts, tz=tz).strftime(fmt)
    except (OverflowError, OSError, ValueError):
        return str(ts)


def load_individual_messages(path: Path) -> dict[str, MessageTemplate]:
    """Read ``{"<id>": {"subject": ..., "body": ...}}`` from the messages file.

    Entries with invalid ids or blank texts are skipped. A missing or
    malformed file raises ``ConfigurationError``.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"messages file missing: {path}") from exc
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"messages file unreadable: {path} ({exc})") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"messages file must contain an object: {path}")

    templates: dict[str, MessageTemplate] = {}
    for message_id, entry in raw.items():
        if not isinstance(message_id, str) or not is_valid_message_id(message_id):
            continue
        if not isinstance(entry, dict):
            continue
        subject = entry.get("subject")
        body = entry.get("body")
        if not isinstance(subject, str) or not isinstance(body, str):
            continue
        if not subject.strip() or not body.strip():
            continue
        templates[message_id.strip()] = MessageTemplate(subject=subject, body=body)
    return templates


@dataclass
class MessageRenderer:
    """Turns engine actions into concrete per-recipient subject/body pairs."""

    mail: MailSettings
    _tz: tzinfo = field(init=False)
    _individual: dict[str, MessageTemplate] | None = field(default=None, init=False)
    _fallback_logged: set[str] = field(default_factory=set, init=False)

    def __post_init__(self) -> None:
        self._tz = resolve_timezone(self.mail.timezone_name)

    def render(self, action: NotificationAction) -> RenderedMessage:
        if isinstance(action, SendReminder):
            return self._render_reminder(action)
        if isinstance(action, SendEscalation):
            ack_url = (
                build_action_url(self.mail.endpoint_url, "ack", action.ack_token)
                if action.ack_token is not None and self.mail.ack_enabled
                else ""
            )
            return self._render_escalation(
                action.recipient.address,
                action.recipient.message_id,
                last_confirm_at=action.last_confirm_at,
                cycle_start_at=action.cycle_start_at,
                deadline_at=action.deadline_at,
                ack_url=ack_url,
            )
        if isinstance(action, SendAckReminder):
            return self._render_escalation(
                action.recipient.address,
                action.recipient.message_id,
                last_confirm_at=action.last_confirm_at,
                cycle_start_at=action.cycle_start_at,
                deadline_at=action.deadline_at,
                ack_url=build_action_url(self.mail.endpoint_url, "ack", action.ack_token),
            )
        raise TypeError(f"unsupported action: {type(action).__name__}")

    def _dt(self, ts: int) -> str:
        return format_timestamp(ts, self._tz, self.mail.datetime_format)

    def _dt_or_never(self, ts: int) -> str:
        return self._dt(ts) if ts > 0 else NEVER_CONFIRMED

    def _render_reminder(self, action: SendReminder) -> RenderedMessage:
        confirm_url = build_action_url(self.mail.endpoint_url, "confirm", action.confirm_token)
        body = (
            self.mail.body_reminder.replace("{CONFIRM_URL}", confirm_url)
            .replace("{DEADLINE_ISO}", self._dt(action.deadline_at))
            .replace("{CYCLE_START_ISO}", self._dt(action.cycle_start_at))
        )
        return RenderedMessage(action.recipient, self.mail.subject_reminder, body)

    def _render_escalation(
        self,
        recipient: str,
        message_id: str,
        *,
        last_confirm_at: int,
        cycle_start_at: int,
        deadline_at: int,
        ack_url: str,
    ) -> RenderedMessage:
        template = self._template_for(recipient, message_id)
        body = template.body
        if not self.mail.ack_enabled:
            for paragraph in _ACK_PARAGRAPHS:
                body = body.replace(paragraph, "")
            body = body.replace("{ACK_URL}", "")
        body = (
            body.replace("{LAST_CONFIRM_ISO}", self._dt_or_never(last_confirm_at))
            .replace("{CYCLE_START_ISO}", self._dt(cycle_start_at))
            .replace("{DEADLINE_ISO}", self._dt(deadline_at))
            .replace("{ACK_URL}", ack_url)
        )
        return RenderedMessage(recipient, template.subject, body)

    def _template_for(self, recipient: str, message_id: str) -> MessageTemplate:
        if not message_id:
            return self.mail.escalation
        individual = self._individual_messages()
        template = individual.get(message_id)
        if template is not None:
            return template
        if message_id not in self._fallback_logged and self.mail.messages_path is not None:
            self._fallback_logged.add(message_id)
            logger.warning(
                "message_id_fallback", recipient=recipient, message_id=message_id
            )
        return self.mail.escalation

    def _individual_messages(self) -> dict[str, MessageTemplate]:
        if self._individual is not None:
            return self._individual
        self._individual = {}
        if self.mail.messages_path is None:
            return self._individual
        try:
            self._individual = load_individual_messages(self.mail.messages_path)
        except ConfigurationError as exc:
            logger.warning("messages_file_unavailable", error=str(exc))
        return self._individual
