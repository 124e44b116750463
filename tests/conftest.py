from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from deadswitch.config import Settings
from deadswitch.domain.switch_config import EscalationRecipient, SwitchConfig
from deadswitch.errors import DeliveryError
from deadswitch.security.tokens import TokenAuthority

SECRET_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
T0 = 1_700_000_000


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for model_field in Settings.model_fields.values():
        if isinstance(model_field.alias, str):
            settings_env_keys.add(model_field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


class SequentialHex:
    """Predictable stand-in for ``secrets.token_hex``."""

    def __init__(self) -> None:
        self.calls = 0

    def __call__(self, nbytes: int) -> str:
        self.calls += 1
        return f"{self.calls:0{nbytes * 2}x}"


@dataclass
class FakeClock:
    now: int = T0

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@dataclass
class RecordingNotifier:
    fail_on_call: int | None = None
    sent: list[tuple[str, str, str]] = field(default_factory=list)
    calls: int = 0

    def send(self, recipient: str, subject: str, body: str) -> None:
        self.calls += 1
        if self.fail_on_call is not None and self.calls >= self.fail_on_call:
            raise DeliveryError("smtp relay refused")
        self.sent.append((recipient, subject, body))


@pytest.fixture
def tokens() -> TokenAuthority:
    return TokenAuthority(secret=bytes.fromhex(SECRET_HEX), random_hex=SequentialHex())


@pytest.fixture
def make_config():
    def _make(**overrides) -> SwitchConfig:
        base = {
            "check_interval_seconds": 300,
            "confirm_window_seconds": 240,
            "remind_every_seconds": 60,
            "escalate_grace_seconds": 60,
            "missed_cycles_before_fire": 1,
            "self_recipients": ("Owner <owner@mail.test>",),
            "escalation_recipients": (EscalationRecipient("friend@mail.test"),),
        }
        base.update(overrides)
        return SwitchConfig(**base)

    return _make


@pytest.fixture
def make_settings(tmp_path: Path):
    def _make(**overrides) -> Settings:
        base = {
            "DEADSWITCH_HMAC_SECRET_HEX": SECRET_HEX,
            "DEADSWITCH_BASE_URL": "https://switch.mail.test",
            "DEADSWITCH_STATE_DIR": str(tmp_path / "state"),
            "CHECK_INTERVAL_SECONDS": 300,
            "CONFIRM_WINDOW_SECONDS": 240,
            "REMIND_EVERY_SECONDS": 60,
            "ESCALATE_GRACE_SECONDS": 60,
            "MISSED_CYCLES_BEFORE_FIRE": 1,
            "TO_SELF": ["Owner <owner@mail.test>"],
            "TO_RECIPIENTS": ["friend@mail.test"],
            "MAIL_FROM": "Switch <switch@mail.test>",
            "RATE_LIMIT_ENABLED": False,
        }
        base.update(overrides)
        return Settings(**base)

    return _make


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def secret_hex() -> str:
    return SECRET_HEX
