from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from deadswitch.config import Settings, load_settings
from deadswitch.domain.switch_config import EscalationRecipient
from deadswitch.errors import ConfigurationError


def test_defaults() -> None:
    settings = Settings()
    assert settings.check_interval_seconds == 14 * 24 * 3600
    assert settings.missed_cycles_before_fire == 3
    assert settings.ack_enabled
    assert settings.ack_require_post
    assert settings.stealth_neutral_for_invalid
    assert settings.notifier == "sendmail"
    assert settings.trusted_proxies == ["127.0.0.1", "::1"]
    assert settings.web_css_href is None
    assert settings.state_path() == Path("/var/lib/deadswitch/deadswitch.json")


def test_env_lists_accept_semicolons_and_json(monkeypatch) -> None:
    monkeypatch.setenv("TO_SELF", "Owner <owner@mail.test>; backup@mail.test")
    monkeypatch.setenv("TO_RECIPIENTS", '[["friend@mail.test", "friend"], "other@mail.test"]')
    monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.1;10.0.0.2")

    settings = Settings()

    assert settings.to_self == ["Owner <owner@mail.test>", "backup@mail.test"]
    assert settings.to_recipients == [["friend@mail.test", "friend"], "other@mail.test"]
    assert settings.trusted_proxies == ["10.0.0.1", "10.0.0.2"]


def test_json_list_must_be_a_list(monkeypatch) -> None:
    monkeypatch.setenv("TO_RECIPIENTS", '{"a": 1}')
    with pytest.raises(ValidationError, match="TO_RECIPIENTS JSON value must be a list"):
        Settings()


@pytest.mark.parametrize("name", ["", "../state.json", "a/b.json", "bad\x01name"])
def test_runtime_file_names_are_validated(name: str) -> None:
    with pytest.raises(ValidationError):
        Settings(DEADSWITCH_STATE_FILE=name)


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("CHECK_INTERVAL_SECONDS", 0),
        ("ESCALATE_GRACE_SECONDS", -1),
        ("ACK_MAX_REMINDS", -1),
        ("IP_MODE", "cloudflare"),
        ("NOTIFIER", "pigeon"),
        ("WEBHOOK_TIMEOUT_SECONDS", 0),
    ],
)
def test_invalid_values_are_rejected(key: str, value: object) -> None:
    with pytest.raises(ValidationError):
        Settings(**{key: value})


def test_load_settings_wraps_validation_errors() -> None:
    with pytest.raises(ConfigurationError, match="invalid settings"):
        load_settings(CHECK_INTERVAL_SECONDS=0)


def test_load_settings_reads_env_file(tmp_path: Path) -> None:
    env_file = tmp_path / "deadswitch.env"
    env_file.write_text(
        "DEADSWITCH_BASE_URL=https://switch.mail.test/\nDEADSWITCH_WEB_PATH=/confirm/\n",
        encoding="utf-8",
    )
    settings = load_settings(str(env_file))
    assert settings.endpoint_url() == "https://switch.mail.test/confirm"


def test_endpoint_url_requires_base_url() -> None:
    with pytest.raises(ConfigurationError, match="DEADSWITCH_BASE_URL"):
        Settings().endpoint_url()


def test_ack_is_effective_only_with_base_url(make_settings) -> None:
    assert make_settings().is_ack_effective()
    assert not make_settings(DEADSWITCH_BASE_URL="").is_ack_effective()
    assert not make_settings(ACK_ENABLED=False).is_ack_effective()


def test_switch_config_from_settings(make_settings) -> None:
    settings = make_settings(
        TO_RECIPIENTS=["friend@mail.test", "sis@mail.test|sister", "broken", "x@mail.test|Bad Id"],
        ACK_MAX_REMINDS=4,
    )
    config = settings.switch_config()
    assert config.check_interval_seconds == 300
    assert config.self_recipients == ("Owner <owner@mail.test>",)
    assert config.escalation_recipients == (
        EscalationRecipient("friend@mail.test"),
        EscalationRecipient("sis@mail.test", "sister"),
        EscalationRecipient("x@mail.test"),
    )
    assert config.ack_enabled
    assert config.ack_max_reminds == 4


@pytest.mark.parametrize("key", ["TO_SELF", "TO_RECIPIENTS"])
def test_switch_config_requires_recipients(make_settings, key: str) -> None:
    with pytest.raises(ConfigurationError, match=key):
        make_settings(**{key: ["not-a-mailbox"]}).switch_config()


def test_token_authority_requires_secret(make_settings) -> None:
    with pytest.raises(ConfigurationError, match="DEADSWITCH_HMAC_SECRET_HEX"):
        make_settings(DEADSWITCH_HMAC_SECRET_HEX=None).token_authority()
    assert make_settings().token_authority().verify_token(
        make_settings().token_authority().issue()
    )


def test_paths_resolve_under_state_dir(make_settings, tmp_path: Path) -> None:
    settings = make_settings(DEADSWITCH_MESSAGES_FILE="messages.json")
    assert settings.lock_path() == tmp_path / "state" / "deadswitch.lock"
    assert settings.rate_limit_path() == tmp_path / "state" / "ratelimit"
    assert settings.messages_path() == tmp_path / "state" / "messages.json"
    assert make_settings(RATE_LIMIT_DIR=str(tmp_path / "rl")).rate_limit_path() == tmp_path / "rl"
