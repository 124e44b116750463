from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Annotated, Any

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from deadswitch.domain.recipients import parse_escalation_entries, parse_mailbox_entries
from deadswitch.domain.switch_config import SwitchConfig
from deadswitch.errors import ConfigurationError
from deadswitch.security.tokens import TokenAuthority

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

DEFAULT_BODY_REMINDER = """Hi,

Please confirm you are still alive by clicking this link:
{CONFIRM_URL}

Please confirm by: {DEADLINE_ISO}
Cycle started at: {CYCLE_START_ISO}

Note: This email link may remain valid until the next cycle starts. If you confirm after
the deadline, escalation logic may already have progressed.
"""

DEFAULT_BODY_ESCALATE = """Hi,

The dead man's switch did not receive confirmation in time.

Last confirmation: {LAST_CONFIRM_ISO}
Cycle started at: {CYCLE_START_ISO}
Deadline was: {DEADLINE_ISO}

Ack receipt by clicking:
{ACK_URL}

[YOUR PREDEFINED MESSAGE GOES HERE]
"""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    hmac_secret_hex: SecretStr | None = Field(default=None, alias="DEADSWITCH_HMAC_SECRET_HEX")
    base_url: str | None = Field(default=None, alias="DEADSWITCH_BASE_URL")
    web_path: str = Field(default="deadswitch", alias="DEADSWITCH_WEB_PATH")
    web_css_href: str | None = Field(default=None, alias="DEADSWITCH_WEB_CSS_HREF")

    state_dir: str = Field(default="/var/lib/deadswitch", alias="DEADSWITCH_STATE_DIR")
    state_file: str = Field(default="deadswitch.json", alias="DEADSWITCH_STATE_FILE")
    lock_file: str = Field(default="deadswitch.lock", alias="DEADSWITCH_LOCK_FILE")
    messages_file: str | None = Field(default=None, alias="DEADSWITCH_MESSAGES_FILE")

    check_interval_seconds: int = Field(default=60 * 60 * 24 * 14, alias="CHECK_INTERVAL_SECONDS")
    confirm_window_seconds: int = Field(default=60 * 60 * 24 * 3, alias="CONFIRM_WINDOW_SECONDS")
    remind_every_seconds: int = Field(default=60 * 60 * 12, alias="REMIND_EVERY_SECONDS")
    escalate_grace_seconds: int = Field(default=60 * 60 * 6, alias="ESCALATE_GRACE_SECONDS")
    missed_cycles_before_fire: int = Field(default=3, alias="MISSED_CYCLES_BEFORE_FIRE")

    ack_enabled: bool = Field(default=True, alias="ACK_ENABLED")
    ack_remind_every_seconds: int = Field(default=60 * 60 * 12, alias="ACK_REMIND_EVERY_SECONDS")
    ack_max_reminds: int = Field(default=25, alias="ACK_MAX_REMINDS")
    ack_require_post: bool = Field(default=True, alias="ACK_REQUIRE_POST")

    stealth_neutral_for_invalid: bool = Field(default=True, alias="STEALTH_NEUTRAL_FOR_INVALID")
    stealth_neutral_on_stale: bool = Field(default=True, alias="STEALTH_NEUTRAL_ON_STALE")
    show_success_details: bool = Field(default=True, alias="SHOW_SUCCESS_DETAILS")

    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_dir: str | None = Field(default=None, alias="RATE_LIMIT_DIR")
    rate_limit_max_requests: int = Field(default=30, alias="RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: int = Field(default=60, alias="RATE_LIMIT_WINDOW_SECONDS")

    ip_mode: str = Field(default="remote_addr", alias="IP_MODE")
    trusted_proxies: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["127.0.0.1", "::1"], alias="TRUSTED_PROXIES"
    )
    trusted_proxy_header: str = Field(default="X-Forwarded-For", alias="TRUSTED_PROXY_HEADER")

    notifier: str = Field(default="sendmail", alias="NOTIFIER")
    sendmail_path: str = Field(default="/usr/sbin/sendmail", alias="SENDMAIL_PATH")
    webhook_url: str | None = Field(default=None, alias="WEBHOOK_URL")
    webhook_timeout_seconds: float = Field(default=10.0, alias="WEBHOOK_TIMEOUT_SECONDS")

    to_self: Annotated[list[str], NoDecode] = Field(default_factory=list, alias="TO_SELF")
    to_recipients: Annotated[list[Any], NoDecode] = Field(
        default_factory=list, alias="TO_RECIPIENTS"
    )
    mail_from: str = Field(default="deadswitch <deadswitch@localhost>", alias="MAIL_FROM")
    reply_to: str | None = Field(default=None, alias="REPLY_TO")
    subject_reminder: str = Field(
        default="[deadswitch] Confirmation required", alias="SUBJECT_REMINDER"
    )
    subject_escalate: str = Field(
        default="[deadswitch] Escalation triggered", alias="SUBJECT_ESCALATE"
    )
    body_reminder: str = Field(default=DEFAULT_BODY_REMINDER, alias="BODY_REMINDER")
    body_escalate: str = Field(default=DEFAULT_BODY_ESCALATE, alias="BODY_ESCALATE")
    mail_timezone: str = Field(default="UTC", alias="MAIL_TIMEZONE")
    mail_datetime_format: str = Field(default="%A, %d %B %Y, %H:%M:%S %Z", alias="MAIL_DATETIME_FORMAT")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("to_self", "trusted_proxies", mode="before")
    def parse_string_list(cls, value: str | list[str]) -> list[str]:
        items = cls._parse_list(value, invalid_json_message="list setting JSON value must be a list")
        return [str(item).strip() for item in items if str(item).strip()]

    @field_validator("to_recipients", mode="before")
    def parse_recipient_list(cls, value: str | list[Any]) -> list[Any]:
        return cls._parse_list(value, invalid_json_message="TO_RECIPIENTS JSON value must be a list")

    @classmethod
    def _parse_list(cls, value: str | list[Any], *, invalid_json_message: str) -> list[Any]:
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return []
            if raw.startswith("[") or raw.startswith("{"):
                parsed = json.loads(raw)
                if not isinstance(parsed, list):
                    raise ValueError(invalid_json_message)
                return parsed
            return [item for item in raw.split(";") if item.strip()]
        return list(value)

    @field_validator("state_file", "lock_file", "messages_file")
    def validate_runtime_file_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        candidate = value.strip()
        if not candidate:
            raise ValueError("runtime file name must not be empty")
        if "/" in candidate or "\\" in candidate:
            raise ValueError("runtime file name must not contain slashes")
        if candidate in {".", ".."} or ".." in candidate:
            raise ValueError("runtime file name must not contain traversal")
        if _CONTROL_CHARS.search(candidate):
            raise ValueError("runtime file name must not contain control characters")
        return candidate

    @field_validator(
        "check_interval_seconds",
        "confirm_window_seconds",
        "remind_every_seconds",
        "missed_cycles_before_fire",
        "ack_remind_every_seconds",
        "rate_limit_max_requests",
        "rate_limit_window_seconds",
    )
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @field_validator("escalate_grace_seconds", "ack_max_reminds")
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @field_validator("web_css_href")
    def normalize_css_href(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("ip_mode")
    def validate_ip_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"remote_addr", "trusted_proxy"}:
            raise ValueError("IP_MODE must be remote_addr or trusted_proxy")
        return normalized

    @field_validator("notifier")
    def validate_notifier(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"sendmail", "webhook"}:
            raise ValueError("NOTIFIER must be sendmail or webhook")
        return normalized

    @field_validator("webhook_timeout_seconds")
    def validate_webhook_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("WEBHOOK_TIMEOUT_SECONDS must be > 0")
        return value

    def state_dir_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    def state_path(self) -> Path:
        return self.state_dir_path() / self.state_file

    def lock_path(self) -> Path:
        return self.state_dir_path() / self.lock_file

    def rate_limit_path(self) -> Path:
        if self.rate_limit_dir and self.rate_limit_dir.strip():
            return Path(self.rate_limit_dir).expanduser()
        return self.state_dir_path() / "ratelimit"

    def messages_path(self) -> Path | None:
        if not self.messages_file:
            return None
        return self.state_dir_path() / self.messages_file

    def endpoint_url(self) -> str:
        base = (self.base_url or "").strip().rstrip("/")
        if not base:
            raise ConfigurationError("DEADSWITCH_BASE_URL is required to build links")
        path = self.web_path.strip().strip("/")
        return f"{base}/{path}" if path else base

    def is_ack_effective(self) -> bool:
        return self.ack_enabled and bool((self.base_url or "").strip())

    def token_authority(self) -> TokenAuthority:
        if self.hmac_secret_hex is None:
            raise ConfigurationError("DEADSWITCH_HMAC_SECRET_HEX is required")
        return TokenAuthority.from_hex(self.hmac_secret_hex.get_secret_value())

    def switch_config(self) -> SwitchConfig:
        self_recipients = parse_mailbox_entries(self.to_self)
        if not self_recipients:
            raise ConfigurationError("TO_SELF must contain at least one valid mailbox")
        escalation_recipients = parse_escalation_entries(self.to_recipients)
        if not escalation_recipients:
            raise ConfigurationError("TO_RECIPIENTS must contain at least one valid mailbox")
        try:
            return SwitchConfig(
                check_interval_seconds=self.check_interval_seconds,
                confirm_window_seconds=self.confirm_window_seconds,
                remind_every_seconds=self.remind_every_seconds,
                escalate_grace_seconds=self.escalate_grace_seconds,
                missed_cycles_before_fire=self.missed_cycles_before_fire,
                self_recipients=self_recipients,
                escalation_recipients=escalation_recipients,
                ack_enabled=self.is_ack_effective(),
                ack_remind_every_seconds=self.ack_remind_every_seconds,
                ack_max_reminds=self.ack_max_reminds,
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc


def load_settings(env_file: str | None = None, **overrides: Any) -> Settings:
    try:
        if env_file is not None:
            return Settings(_env_file=env_file, **overrides)
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid settings: {exc}") from exc
