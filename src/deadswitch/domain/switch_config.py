from __future__ import annotations

import re
from dataclasses import dataclass

ACK_REMIND_FLOOR_SECONDS = 60
CLOCK_SKEW_TOLERANCE_SECONDS = 5

_MESSAGE_ID_PATTERN = re.compile(r"^[a-z0-9_-]{1,100}$")


def is_valid_message_id(value: str) -> bool:
    return bool(_MESSAGE_ID_PATTERN.fullmatch(value.strip()))


@dataclass(frozen=True)
class EscalationRecipient:
    """One third-party mailbox, optionally bound to an individual message id."""

    address: str
    message_id: str = ""


@dataclass(frozen=True)
class SwitchConfig:
    """Validated timing and recipient knobs consumed by the cycle engine."""

    check_interval_seconds: int
    confirm_window_seconds: int
    remind_every_seconds: int
    escalate_grace_seconds: int
    missed_cycles_before_fire: int
    self_recipients: tuple[str, ...]
    escalation_recipients: tuple[EscalationRecipient, ...]
    ack_enabled: bool = False
    ack_remind_every_seconds: int = ACK_REMIND_FLOOR_SECONDS
    ack_max_reminds: int = 0

    def __post_init__(self) -> None:
        if self.check_interval_seconds < 1:
            raise ValueError("check_interval_seconds must be >= 1")
        if self.confirm_window_seconds < 1:
            raise ValueError("confirm_window_seconds must be >= 1")
        if self.remind_every_seconds < 1:
            raise ValueError("remind_every_seconds must be >= 1")
        if self.escalate_grace_seconds < 0:
            raise ValueError("escalate_grace_seconds must be >= 0")
        if self.missed_cycles_before_fire < 1:
            raise ValueError("missed_cycles_before_fire must be >= 1")
        if self.ack_remind_every_seconds < 1:
            raise ValueError("ack_remind_every_seconds must be >= 1")
        if self.ack_max_reminds < 0:
            raise ValueError("ack_max_reminds must be >= 0")

    @property
    def effective_ack_remind_every_seconds(self) -> int:
        return max(ACK_REMIND_FLOOR_SECONDS, self.ack_remind_every_seconds)

    def warnings(self) -> tuple[str, ...]:
        found: list[str] = []
        if self.confirm_window_seconds > self.check_interval_seconds:
            found.append("confirm_window_seconds is greater than check_interval_seconds")
        if self.remind_every_seconds > self.confirm_window_seconds:
            found.append(
                "remind_every_seconds is greater than confirm_window_seconds; "
                "only limited reminders may occur per cycle"
            )
        if self.ack_enabled and self.ack_remind_every_seconds < ACK_REMIND_FLOOR_SECONDS:
            found.append(
                f"ack_remind_every_seconds is below {ACK_REMIND_FLOOR_SECONDS}; "
                f"runtime clamps it to {ACK_REMIND_FLOOR_SECONDS} seconds"
            )
        return tuple(found)
