from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, replace
from typing import Any

from deadswitch.errors import StateCorruptionError

STATE_VERSION = 1

# 9999-12-31T23:59:59Z; later values cannot be rendered as dates.
MAX_EPOCH_SECONDS = 253_402_300_799

# Keys written by the first generation of the state file.
_LEGACY_KEYS = {
    "token": "confirm_token",
    "escalate_ack_token": "ack_token",
    "escalate_ack_at": "ack_at",
    "escalate_ack_sent_count": "ack_sent_count",
    "escalate_ack_next_at": "ack_next_at",
}


@dataclass(frozen=True)
class Token:
    id: str
    sig: str

    def to_payload(self) -> dict[str, str]:
        return {"id": self.id, "sig": self.sig}

    @classmethod
    def from_payload(cls, raw: object) -> Token | None:
        if raw is None:
            return None
        if not isinstance(raw, Mapping):
            raise StateCorruptionError("token must be an object")
        token_id = raw.get("id")
        token_sig = raw.get("sig")
        if not token_id or not token_sig:
            return None
        if not isinstance(token_id, str) or not isinstance(token_sig, str):
            raise StateCorruptionError("token id/sig must be strings")
        return cls(id=token_id, sig=token_sig)


@dataclass(frozen=True)
class WindowTiming:
    cycle_start_at: int
    next_check_at: int
    deadline_at: int
    next_reminder_at: int


def cycle_window(cycle_start: int, check_interval: int, confirm_window: int) -> WindowTiming:
    next_check = cycle_start + max(1, check_interval)
    deadline = next_check + max(1, confirm_window)
    return WindowTiming(
        cycle_start_at=cycle_start,
        next_check_at=next_check,
        deadline_at=deadline,
        next_reminder_at=next_check,
    )


@dataclass(frozen=True)
class SwitchState:
    """The single persisted record of one switch instance.

    Timestamps are integer epoch seconds. ``last_confirm_at == 0`` means the
    owner has never confirmed. The ack fields are only populated after an
    escalation went out with acknowledgement enabled.
    """

    version: int
    created_at: int
    last_tick_at: int
    cycle_start_at: int
    next_check_at: int
    deadline_at: int
    next_reminder_at: int
    last_confirm_at: int = 0
    missed_cycles: int = 0
    missed_cycle_deadline: int | None = None
    confirm_token: Token | None = None
    escalated_sent_at: int | None = None
    ack_token: Token | None = None
    ack_at: int | None = None
    ack_sent_count: int = 0
    ack_next_at: int | None = None

    @property
    def is_escalated(self) -> bool:
        return bool(self.escalated_sent_at)

    @property
    def is_acknowledged(self) -> bool:
        return bool(self.ack_at)

    def confirmed_this_cycle(self) -> bool:
        # A confirmation counts only once the window has opened.
        return self.last_confirm_at >= self.next_check_at

    def window_is_consistent(self) -> bool:
        return (
            self.cycle_start_at > 0
            and self.next_check_at > 0
            and self.deadline_at > self.next_check_at
        )

    def with_cycle(self, timing: WindowTiming, token: Token) -> SwitchState:
        return replace(
            self,
            cycle_start_at=timing.cycle_start_at,
            next_check_at=timing.next_check_at,
            deadline_at=timing.deadline_at,
            next_reminder_at=timing.next_reminder_at,
            confirm_token=token,
        )

    def with_ack_reset(self) -> SwitchState:
        return replace(self, ack_token=None, ack_at=None, ack_sent_count=0, ack_next_at=None)

    def with_escalation_cleared(self) -> SwitchState:
        return replace(self.with_ack_reset(), escalated_sent_at=None)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["confirm_token"] = self.confirm_token.to_payload() if self.confirm_token else None
        payload["ack_token"] = self.ack_token.to_payload() if self.ack_token else None
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), indent=2, sort_keys=True)

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> SwitchState:
        if not isinstance(raw, Mapping):
            raise StateCorruptionError("state payload must be an object")
        data = dict(raw)
        for legacy_key, key in _LEGACY_KEYS.items():
            if legacy_key in data and key not in data:
                data[key] = data.pop(legacy_key)

        return cls(
            version=_int_field(data, "version", default=STATE_VERSION),
            created_at=_int_field(data, "created_at", default=0),
            last_tick_at=_int_field(data, "last_tick_at", default=0),
            cycle_start_at=_int_field(data, "cycle_start_at", default=0),
            next_check_at=_int_field(data, "next_check_at", default=0),
            deadline_at=_int_field(data, "deadline_at", default=0),
            next_reminder_at=_int_field(
                data, "next_reminder_at", default=_int_field(data, "next_check_at", default=0)
            ),
            last_confirm_at=_int_field(data, "last_confirm_at", default=0),
            missed_cycles=_int_field(data, "missed_cycles", default=0),
            missed_cycle_deadline=_optional_int_field(data, "missed_cycle_deadline"),
            confirm_token=Token.from_payload(data.get("confirm_token")),
            escalated_sent_at=_optional_int_field(data, "escalated_sent_at"),
            ack_token=Token.from_payload(data.get("ack_token")),
            ack_at=_optional_int_field(data, "ack_at"),
            ack_sent_count=_int_field(data, "ack_sent_count", default=0),
            ack_next_at=_optional_int_field(data, "ack_next_at"),
        )

    @classmethod
    def from_json(cls, raw: str) -> SwitchState:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateCorruptionError(f"state is not valid JSON: {exc.msg}") from exc
        except RecursionError as exc:
            raise StateCorruptionError("state JSON is nested too deeply") from exc
        except ValueError as exc:
            raise StateCorruptionError(f"state JSON is not decodable: {exc}") from exc
        return cls.from_payload(payload)


def _coerce_int(key: str, value: object) -> int:
    if isinstance(value, bool):
        raise StateCorruptionError(f"{key} must be an integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().lstrip("-").isdecimal():
        try:
            value = int(value.strip())
        except ValueError as exc:
            raise StateCorruptionError(f"{key} must be an integer") from exc
    if not isinstance(value, int):
        raise StateCorruptionError(f"{key} must be an integer")
    if abs(value) > MAX_EPOCH_SECONDS:
        raise StateCorruptionError(f"{key} is out of range")
    return value


def _int_field(data: Mapping[str, Any], key: str, *, default: int) -> int:
    value = data.get(key)
    if value is None:
        return default
    return _coerce_int(key, value)


def _optional_int_field(data: Mapping[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None or value == 0:
        return None
    return _coerce_int(key, value)
