from __future__ import annotations

from dataclasses import dataclass, field, replace

from deadswitch.domain.actions import (
    NotificationAction,
    SendAckReminder,
    SendEscalation,
    SendReminder,
)
from deadswitch.domain.cycle_codes import CycleEvent, SwitchPhase
from deadswitch.domain.state import STATE_VERSION, SwitchState, cycle_window
from deadswitch.domain.switch_config import CLOCK_SKEW_TOLERANCE_SECONDS, SwitchConfig
from deadswitch.security.tokens import TokenAuthority


@dataclass(frozen=True)
class TickDecision:
    """Result of one engine pass.

    ``state`` must only be persisted after every action in ``actions`` was
    delivered; the caller owns delivery and persistence.
    """

    state: SwitchState
    actions: tuple[NotificationAction, ...] = ()
    events: tuple[CycleEvent, ...] = ()

    @property
    def has_actions(self) -> bool:
        return bool(self.actions)


@dataclass
class _Pass:
    state: SwitchState
    actions: list[NotificationAction] = field(default_factory=list)
    events: list[CycleEvent] = field(default_factory=list)

    def finish(self) -> TickDecision:
        return TickDecision(state=self.state, actions=tuple(self.actions), events=tuple(self.events))


class CycleEngine:
    """Deterministic cycle state machine.

    Every method returns a new ``SwitchState``; nothing here performs I/O. The
    only non-determinism is token issuance, which is delegated to the
    ``TokenAuthority`` so tests can inject a predictable generator.
    """

    def __init__(self, config: SwitchConfig, tokens: TokenAuthority) -> None:
        self._config = config
        self._tokens = tokens

    @property
    def config(self) -> SwitchConfig:
        return self._config

    def initialise(self, now: int) -> SwitchState:
        timing = cycle_window(
            now, self._config.check_interval_seconds, self._config.confirm_window_seconds
        )
        return SwitchState(
            version=STATE_VERSION,
            created_at=now,
            last_tick_at=now,
            cycle_start_at=timing.cycle_start_at,
            next_check_at=timing.next_check_at,
            deadline_at=timing.deadline_at,
            next_reminder_at=timing.next_reminder_at,
            last_confirm_at=0,
            confirm_token=self._tokens.issue(),
        )

    def start_cycle(self, state: SwitchState, now: int) -> SwitchState:
        timing = cycle_window(
            now, self._config.check_interval_seconds, self._config.confirm_window_seconds
        )
        return state.with_cycle(timing, self._tokens.issue())

    def decide(self, state: SwitchState, now: int) -> TickDecision:
        tick = _Pass(state=self._migrate_initial_confirm(state, now))
        if tick.state is not state:
            tick.events.append(CycleEvent.INITIAL_CONFIRM_MIGRATED)

        if tick.state.last_tick_at and now + CLOCK_SKEW_TOLERANCE_SECONDS < tick.state.last_tick_at:
            tick.state = replace(tick.state, last_tick_at=now)
            tick.events.append(CycleEvent.CLOCK_BACKWARDS)
            return tick.finish()
        tick.state = replace(tick.state, last_tick_at=now)

        if not self._tokens.verify_token(tick.state.confirm_token):
            tick.state = replace(tick.state, confirm_token=self._tokens.issue())
            tick.events.append(CycleEvent.TOKEN_REISSUED)
            return tick.finish()

        if not tick.state.window_is_consistent():
            tick.state = self.reset(tick.state, now)
            tick.events.append(CycleEvent.STATE_RECOVERED)
            return tick.finish()

        self._reminder_phase(tick, now)
        self._escalation_phase(tick, now)
        self._ack_reminder_phase(tick, now)
        return tick.finish()

    def apply_confirm(self, state: SwitchState, now: int) -> SwitchState:
        confirmed = replace(
            state, last_confirm_at=now, missed_cycles=0, missed_cycle_deadline=None
        ).with_escalation_cleared()
        return self.start_cycle(confirmed, now)

    def apply_ack(self, state: SwitchState, now: int) -> SwitchState:
        return replace(state, ack_at=state.ack_at or now, ack_next_at=None)

    def reset(self, state: SwitchState, now: int) -> SwitchState:
        cleared = replace(
            state, missed_cycles=0, missed_cycle_deadline=None, last_tick_at=now
        ).with_escalation_cleared()
        return self.start_cycle(cleared, now)

    def describe_phase(self, state: SwitchState, now: int) -> SwitchPhase:
        if state.is_escalated:
            if state.is_acknowledged:
                return SwitchPhase.ACKNOWLEDGED
            if state.ack_token is not None:
                return SwitchPhase.ACK_PENDING
            return SwitchPhase.ESCALATED
        if now < state.next_check_at or state.confirmed_this_cycle():
            return SwitchPhase.AWAITING_WINDOW
        if now < state.deadline_at:
            return SwitchPhase.WINDOW_OPEN
        if now < state.deadline_at + self._config.escalate_grace_seconds:
            return SwitchPhase.GRACE
        return SwitchPhase.MISSED

    def _migrate_initial_confirm(self, state: SwitchState, now: int) -> SwitchState:
        created_at = state.created_at
        if (
            created_at > 0
            and state.cycle_start_at == created_at
            and state.last_confirm_at == created_at
            and not state.is_escalated
            and state.missed_cycles == 0
            and now - created_at > CLOCK_SKEW_TOLERANCE_SECONDS
        ):
            return replace(state, last_confirm_at=0)
        return state

    def _reminder_phase(self, tick: _Pass, now: int) -> None:
        state = tick.state
        if not state.next_check_at <= now < state.deadline_at:
            return
        due_at = max(state.next_reminder_at, state.next_check_at)
        if now < due_at:
            return
        assert state.confirm_token is not None
        for recipient in self._config.self_recipients:
            tick.actions.append(
                SendReminder(
                    recipient=recipient,
                    confirm_token=state.confirm_token,
                    cycle_start_at=state.cycle_start_at,
                    deadline_at=state.deadline_at,
                )
            )
        tick.state = replace(state, next_reminder_at=now + self._config.remind_every_seconds)
        tick.events.append(CycleEvent.REMINDER_DUE)

    def _escalation_phase(self, tick: _Pass, now: int) -> None:
        state = tick.state
        fire_at = state.deadline_at + self._config.escalate_grace_seconds
        if now < fire_at or state.confirmed_this_cycle():
            return

        if state.is_escalated:
            if not self._ack_handling_quiet(state):
                tick.events.append(CycleEvent.ESCALATION_ALREADY_SENT)
            return

        if state.missed_cycle_deadline == state.deadline_at:
            tick.events.append(CycleEvent.MISS_ALREADY_RECORDED)
        else:
            state = replace(
                state,
                missed_cycles=state.missed_cycles + 1,
                missed_cycle_deadline=state.deadline_at,
            )
            tick.events.append(CycleEvent.MISS_RECORDED)

        if state.missed_cycles < self._config.missed_cycles_before_fire:
            state = replace(self.start_cycle(state, now), missed_cycle_deadline=None)
            tick.state = state
            tick.events.append(CycleEvent.NEW_CYCLE_AFTER_MISS)
            return

        state = state.with_ack_reset()
        if self._config.ack_enabled:
            ack_next_at = (
                now + self._config.effective_ack_remind_every_seconds
                if self._config.ack_max_reminds > 0
                else None
            )
            state = replace(state, ack_token=self._tokens.issue(), ack_next_at=ack_next_at)

        for recipient in self._config.escalation_recipients:
            tick.actions.append(
                SendEscalation(
                    recipient=recipient,
                    ack_token=state.ack_token,
                    last_confirm_at=state.last_confirm_at,
                    cycle_start_at=state.cycle_start_at,
                    deadline_at=state.deadline_at,
                )
            )
        tick.state = replace(state, escalated_sent_at=now)
        tick.events.append(CycleEvent.ESCALATION_FIRED)

    def _ack_reminder_phase(self, tick: _Pass, now: int) -> None:
        state = tick.state
        if not self._config.ack_enabled or not state.is_escalated or state.is_acknowledged:
            return

        max_reminds = self._config.ack_max_reminds
        if max_reminds <= 0:
            if state.ack_next_at:
                tick.state = replace(state, ack_next_at=None)
                tick.events.append(CycleEvent.ACK_REMINDERS_DISABLED)
            return

        if state.ack_sent_count >= max_reminds:
            if state.ack_next_at:
                tick.state = replace(state, ack_next_at=None)
                tick.events.append(CycleEvent.ACK_REMINDER_LIMIT)
            return

        if not state.ack_next_at or now < state.ack_next_at:
            return

        if state.ack_token is None:
            tick.state = replace(state, ack_next_at=None)
            tick.events.append(CycleEvent.ACK_TOKEN_MISSING)
            return

        reminder_number = state.ack_sent_count + 1
        for recipient in self._config.escalation_recipients:
            tick.actions.append(
                SendAckReminder(
                    recipient=recipient,
                    ack_token=state.ack_token,
                    last_confirm_at=state.last_confirm_at,
                    cycle_start_at=state.cycle_start_at,
                    deadline_at=state.deadline_at,
                    reminder_number=reminder_number,
                )
            )
        limit_reached = reminder_number >= max_reminds
        tick.state = replace(
            state,
            ack_sent_count=reminder_number,
            ack_next_at=(
                None if limit_reached else now + self._config.effective_ack_remind_every_seconds
            ),
        )
        tick.events.append(CycleEvent.ACK_REMINDER_DUE)
        if limit_reached:
            tick.events.append(CycleEvent.ACK_REMINDER_LIMIT)

    def _ack_handling_quiet(self, state: SwitchState) -> bool:
        if not self._config.ack_enabled:
            return False
        if state.is_acknowledged:
            return True
        return 0 < self._config.ack_max_reminds <= state.ack_sent_count
