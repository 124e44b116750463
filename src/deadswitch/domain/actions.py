from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from deadswitch.domain.state import Token
from deadswitch.domain.switch_config import EscalationRecipient


class ActionKind(StrEnum):
    SEND_REMINDER = "send_reminder"
    SEND_ESCALATION = "send_escalation"
    SEND_ACK_REMINDER = "send_ack_reminder"


@dataclass(frozen=True)
class SendReminder:
    recipient: str
    confirm_token: Token
    cycle_start_at: int
    deadline_at: int

    kind: ActionKind = ActionKind.SEND_REMINDER


@dataclass(frozen=True)
class SendEscalation:
    recipient: EscalationRecipient
    ack_token: Token | None
    last_confirm_at: int
    cycle_start_at: int
    deadline_at: int

    kind: ActionKind = ActionKind.SEND_ESCALATION


@dataclass(frozen=True)
class SendAckReminder:
    recipient: EscalationRecipient
    ack_token: Token
    last_confirm_at: int
    cycle_start_at: int
    deadline_at: int
    reminder_number: int

    kind: ActionKind = ActionKind.SEND_ACK_REMINDER


NotificationAction = SendReminder | SendEscalation | SendAckReminder
