from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from deadswitch.config import Settings
from deadswitch.domain.recipients import is_valid_mailbox, mailbox_of, parse_mailbox_entries
from deadswitch.domain.switch_config import is_valid_message_id
from deadswitch.errors import ConfigurationError
from deadswitch.security.tokens import MIN_SECRET_BYTES, decode_secret_hex
from deadswitch.services.messages import load_individual_messages
from deadswitch.services.state_store import StateStore

EXIT_PASS = 0
EXIT_WARN = 1
EXIT_FAIL = 2

RECOMMENDED_SECRET_BYTES = 32
_PLACEHOLDER_HOSTS = ("example.com", "example.org", "localhost")


@dataclass(frozen=True)
class PreflightCheck:
    category: str
    name: str
    status: str
    message: str

    def __post_init__(self) -> None:
        normalized = self.status.strip().lower()
        status_map = {"ok": "pass", "warning": "warn", "error": "fail"}
        normalized = status_map.get(normalized, normalized)
        if normalized not in {"pass", "warn", "fail"}:
            raise ValueError(f"invalid preflight check status: {self.status}")
        object.__setattr__(self, "status", normalized)


@dataclass(frozen=True)
class PreflightReport:
    checks: list[PreflightCheck]

    @property
    def ok(self) -> bool:
        return all(check.status != "fail" for check in self.checks)

    def by_status(self, status: str) -> list[PreflightCheck]:
        return [check for check in self.checks if check.status == status]


def preflight_status(report: PreflightReport) -> str:
    if any(check.status == "fail" for check in report.checks):
        return "fail"
    if any(check.status == "warn" for check in report.checks):
        return "warn"
    return "pass"


def preflight_exit_code(report: PreflightReport) -> int:
    return {"pass": EXIT_PASS, "warn": EXIT_WARN, "fail": EXIT_FAIL}[preflight_status(report)]


def _is_placeholder(value: str) -> bool:
    lowered = value.lower()
    return any(host in lowered for host in _PLACEHOLDER_HOSTS)


def _check_state_dir(settings: Settings, checks: list[PreflightCheck]) -> None:
    state_dir = settings.state_dir_path()
    if not state_dir.is_dir():
        checks.append(
            PreflightCheck("paths", "state_dir", "fail", f"state directory does not exist: {state_dir}")
        )
        return
    if not os.access(state_dir, os.R_OK | os.X_OK):
        checks.append(
            PreflightCheck("paths", "state_dir", "fail", f"state directory is not readable: {state_dir}")
        )
        return
    if not os.access(state_dir, os.W_OK):
        checks.append(
            PreflightCheck("paths", "state_dir", "warn", f"state directory is not writable: {state_dir}")
        )
        return
    checks.append(PreflightCheck("paths", "state_dir", "pass", f"state directory: {state_dir}"))


def _check_state_file(settings: Settings, checks: list[PreflightCheck]) -> None:
    store = StateStore(settings.state_path())
    if not store.exists():
        checks.append(
            PreflightCheck(
                "paths", "state_file", "pass", "state file absent; first tick will initialise it"
            )
        )
        return
    if store.load() is None:
        checks.append(
            PreflightCheck(
                "paths",
                "state_file",
                "warn",
                f"state file is unreadable or corrupt and will be re-initialised: {store.path}",
            )
        )
        return
    checks.append(PreflightCheck("paths", "state_file", "pass", f"state file loads: {store.path}"))


def _check_optional_dir(
    category: str, name: str, directory: Path, checks: list[PreflightCheck]
) -> None:
    if not directory.exists():
        checks.append(
            PreflightCheck(
                category, name, "warn", f"{directory} does not exist yet (created on demand)"
            )
        )
    elif not os.access(directory, os.W_OK):
        checks.append(PreflightCheck(category, name, "warn", f"{directory} is not writable"))
    else:
        checks.append(PreflightCheck(category, name, "pass", f"{directory} writable"))


def _check_secret(settings: Settings, checks: list[PreflightCheck]) -> None:
    if settings.hmac_secret_hex is None or not settings.hmac_secret_hex.get_secret_value().strip():
        checks.append(PreflightCheck("security", "hmac_secret", "fail", "HMAC secret is empty"))
        return
    try:
        secret = decode_secret_hex(settings.hmac_secret_hex.get_secret_value())
    except ConfigurationError as exc:
        checks.append(PreflightCheck("security", "hmac_secret", "fail", str(exc)))
        return
    if len(secret) < RECOMMENDED_SECRET_BYTES:
        checks.append(
            PreflightCheck(
                "security",
                "hmac_secret",
                "warn",
                f"HMAC secret is valid ({MIN_SECRET_BYTES}+ bytes) but shorter than "
                f"recommended {RECOMMENDED_SECRET_BYTES} bytes",
            )
        )
        return
    checks.append(PreflightCheck("security", "hmac_secret", "pass", "HMAC secret format/length ok"))


def _check_base_url(settings: Settings, checks: list[PreflightCheck]) -> None:
    base_url = (settings.base_url or "").strip()
    if not base_url:
        checks.append(PreflightCheck("web", "base_url", "fail", "DEADSWITCH_BASE_URL is empty"))
        return
    parts = urlsplit(base_url)
    if not parts.scheme or not parts.netloc:
        checks.append(
            PreflightCheck("web", "base_url", "fail", f"base URL must be absolute: {base_url}")
        )
        return
    if _is_placeholder(parts.netloc):
        checks.append(
            PreflightCheck("web", "base_url", "fail", f"base URL is a placeholder host: {base_url}")
        )
        return
    if parts.scheme != "https":
        checks.append(PreflightCheck("web", "base_url", "warn", f"base URL is not HTTPS: {base_url}"))
        return
    if parts.query:
        checks.append(
            PreflightCheck("web", "base_url", "warn", "base URL should not carry a query string")
        )
        return
    checks.append(PreflightCheck("web", "base_url", "pass", f"base URL: {base_url}"))


def _check_timing(settings: Settings, checks: list[PreflightCheck]) -> None:
    try:
        config = settings.switch_config()
    except ConfigurationError as exc:
        checks.append(PreflightCheck("timing", "switch_config", "fail", str(exc)))
        return
    for warning in config.warnings():
        checks.append(PreflightCheck("timing", "switch_config", "warn", warning))
    if not config.warnings():
        checks.append(PreflightCheck("timing", "switch_config", "pass", "timing config valid"))


def _check_mailboxes(name: str, entries: Iterable[str], checks: list[PreflightCheck]) -> None:
    raw = [str(entry) for entry in entries]
    valid = parse_mailbox_entries(raw)
    parts = [part.strip() for entry in raw for part in entry.split(",") if part.strip()]
    invalid = sum(1 for part in parts if not is_valid_mailbox(mailbox_of(part)))
    if not valid:
        checks.append(PreflightCheck("mail", name, "fail", f"{name} has no valid mailbox"))
        return
    if any(_is_placeholder(mailbox_of(entry)) for entry in valid):
        checks.append(PreflightCheck("mail", name, "fail", f"{name} contains placeholder addresses"))
        return
    if invalid:
        checks.append(
            PreflightCheck("mail", name, "warn", f"{name} contains {invalid} malformed entries")
        )
        return
    checks.append(PreflightCheck("mail", name, "pass", f"{name} has {len(valid)} valid entries"))


def _recipient_ids(settings: Settings) -> tuple[list[str], int]:
    ids: list[str] = []
    invalid = 0
    for entry in settings.to_recipients:
        if isinstance(entry, (list, tuple)):
            raw_id = str(entry[1]) if len(entry) > 1 and entry[1] is not None else ""
        else:
            raw_id = str(entry).partition("|")[2]
        raw_id = raw_id.strip()
        if not raw_id:
            continue
        if is_valid_message_id(raw_id):
            ids.append(raw_id)
        else:
            invalid += 1
    return ids, invalid


def _check_messages_file(settings: Settings, checks: list[PreflightCheck]) -> None:
    ids, invalid = _recipient_ids(settings)
    if invalid:
        checks.append(
            PreflightCheck(
                "mail",
                "recipient_ids",
                "fail",
                f"{invalid} invalid recipient ids; allowed: ^[a-z0-9_-]+$ (1..100 chars)",
            )
        )
    if not ids:
        return
    path = settings.messages_path()
    if path is None:
        checks.append(
            PreflightCheck(
                "mail",
                "messages_file",
                "fail",
                "DEADSWITCH_MESSAGES_FILE is empty while recipient ids are configured",
            )
        )
        return
    try:
        templates = load_individual_messages(path)
    except ConfigurationError as exc:
        checks.append(PreflightCheck("mail", "messages_file", "fail", str(exc)))
        return
    missing = sorted(set(ids) - set(templates))
    if missing:
        checks.append(
            PreflightCheck(
                "mail", "messages_file", "fail", f"recipient ids missing: {', '.join(missing)}"
            )
        )
        return
    checks.append(PreflightCheck("mail", "messages_file", "pass", "recipient ids resolved"))


def _check_transport(settings: Settings, checks: list[PreflightCheck]) -> None:
    if not settings.mail_from.strip() or _is_placeholder(mailbox_of(settings.mail_from)):
        checks.append(
            PreflightCheck("mail", "mail_from", "fail", "MAIL_FROM is empty or a placeholder")
        )
    else:
        checks.append(PreflightCheck("mail", "mail_from", "pass", "MAIL_FROM is set"))

    if not settings.subject_escalate.strip() or not settings.body_escalate.strip():
        checks.append(
            PreflightCheck("mail", "escalation_text", "fail", "escalation subject/body is empty")
        )

    if settings.notifier == "webhook":
        status = "pass" if settings.webhook_url else "fail"
        checks.append(
            PreflightCheck("mail", "webhook_url", status, f"WEBHOOK_URL={settings.webhook_url or ''}")
        )
        return

    sendmail = Path(settings.sendmail_path)
    if not sendmail.is_file():
        checks.append(
            PreflightCheck("mail", "sendmail_path", "fail", f"sendmail not found: {sendmail}")
        )
    elif not os.access(sendmail, os.X_OK):
        checks.append(
            PreflightCheck("mail", "sendmail_path", "fail", f"sendmail not executable: {sendmail}")
        )
    else:
        checks.append(PreflightCheck("mail", "sendmail_path", "pass", f"sendmail: {sendmail}"))


def run_preflight(settings: Settings) -> PreflightReport:
    """Read-only readiness checks for the ``check`` command."""
    checks: list[PreflightCheck] = []
    _check_state_dir(settings, checks)
    _check_state_file(settings, checks)
    _check_secret(settings, checks)
    _check_base_url(settings, checks)
    _check_timing(settings, checks)
    _check_mailboxes("TO_SELF", settings.to_self, checks)
    _check_mailboxes(
        "TO_RECIPIENTS",
        (
            str(entry[0]) if isinstance(entry, (list, tuple)) and entry else str(entry).partition("|")[0]
            for entry in settings.to_recipients
        ),
        checks,
    )
    _check_messages_file(settings, checks)
    _check_transport(settings, checks)
    if settings.rate_limit_enabled:
        _check_optional_dir("web", "rate_limit_dir", settings.rate_limit_path(), checks)
    return PreflightReport(checks=checks)
