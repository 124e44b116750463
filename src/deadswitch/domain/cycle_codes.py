from __future__ import annotations

from enum import StrEnum


class CycleEvent(StrEnum):
    INITIALISED = "cycle:initialised"
    INITIAL_CONFIRM_MIGRATED = "cycle:initial_confirm_migrated"
    CLOCK_BACKWARDS = "cycle:clock_backwards"
    TOKEN_REISSUED = "cycle:token_reissued"
    STATE_RECOVERED = "cycle:state_recovered"
    REMINDER_DUE = "reminder:due"
    MISS_RECORDED = "miss:recorded"
    MISS_ALREADY_RECORDED = "miss:already_recorded"
    NEW_CYCLE_AFTER_MISS = "miss:new_cycle"
    ESCALATION_FIRED = "escalation:fired"
    ESCALATION_ALREADY_SENT = "escalation:already_sent"
    ACK_REMINDER_DUE = "ack:reminder_due"
    ACK_REMINDER_LIMIT = "ack:reminder_limit"
    ACK_REMINDERS_DISABLED = "ack:reminders_disabled"
    ACK_TOKEN_MISSING = "ack:token_missing"
    CONFIRMED = "gateway:confirmed"
    ACKNOWLEDGED = "gateway:acknowledged"
    RESET = "operator:reset"


class SwitchPhase(StrEnum):
    AWAITING_WINDOW = "awaiting_window"
    WINDOW_OPEN = "window_open"
    GRACE = "grace"
    MISSED = "missed"
    ESCALATED = "escalated"
    ACK_PENDING = "ack_pending"
    ACKNOWLEDGED = "acknowledged"
