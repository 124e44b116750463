from __future__ import annotations

import json

import pytest

from deadswitch.domain.state import STATE_VERSION, SwitchState, Token, cycle_window
from deadswitch.errors import StateCorruptionError

T0 = 1_700_000_000


def _state(**overrides) -> SwitchState:
    base = {
        "version": STATE_VERSION,
        "created_at": T0,
        "last_tick_at": T0,
        "cycle_start_at": T0,
        "next_check_at": T0 + 300,
        "deadline_at": T0 + 540,
        "next_reminder_at": T0 + 300,
        "confirm_token": Token(id="a" * 32, sig="b" * 64),
    }
    base.update(overrides)
    return SwitchState(**base)


def test_cycle_window_orders_timestamps() -> None:
    timing = cycle_window(T0, 300, 240)
    assert timing.cycle_start_at < timing.next_check_at < timing.deadline_at
    assert timing.next_reminder_at == timing.next_check_at


def test_cycle_window_clamps_zero_durations() -> None:
    timing = cycle_window(T0, 0, 0)
    assert timing.next_check_at == T0 + 1
    assert timing.deadline_at == T0 + 2


def test_json_roundtrip_preserves_all_fields() -> None:
    state = _state(
        missed_cycles=2,
        missed_cycle_deadline=T0 + 540,
        escalated_sent_at=T0 + 610,
        ack_token=Token(id="c" * 32, sig="d" * 64),
        ack_sent_count=1,
        ack_next_at=T0 + 730,
    )
    assert SwitchState.from_json(state.to_json()) == state


def test_to_json_is_stable_and_nests_tokens() -> None:
    payload = json.loads(_state().to_json())
    assert payload["confirm_token"] == {"id": "a" * 32, "sig": "b" * 64}
    assert payload["ack_token"] is None
    assert list(payload) == sorted(payload)


def test_from_payload_maps_legacy_keys() -> None:
    payload = {
        "version": 1,
        "created_at": T0,
        "last_tick_at": T0,
        "cycle_start_at": T0,
        "next_check_at": T0 + 300,
        "deadline_at": T0 + 540,
        "token": {"id": "a" * 32, "sig": "b" * 64},
        "escalated_sent_at": T0 + 610,
        "escalate_ack_token": {"id": "c" * 32, "sig": "d" * 64},
        "escalate_ack_sent_count": 3,
        "escalate_ack_next_at": T0 + 900,
    }
    state = SwitchState.from_payload(payload)
    assert state.confirm_token == Token(id="a" * 32, sig="b" * 64)
    assert state.ack_token == Token(id="c" * 32, sig="d" * 64)
    assert state.ack_sent_count == 3
    assert state.ack_next_at == T0 + 900
    assert state.next_reminder_at == T0 + 300


def test_zero_optional_timestamps_load_as_none() -> None:
    state = SwitchState.from_payload(
        {
            "cycle_start_at": T0,
            "next_check_at": T0 + 1,
            "deadline_at": T0 + 2,
            "escalated_sent_at": 0,
            "ack_at": 0,
        }
    )
    assert state.escalated_sent_at is None
    assert state.ack_at is None
    assert not state.is_escalated


def test_empty_token_loads_as_missing() -> None:
    state = SwitchState.from_payload({"confirm_token": {"id": "", "sig": ""}})
    assert state.confirm_token is None


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        '{"next_check_at": "soon"}',
        '{"next_check_at": true}',
        '{"confirm_token": "abc"}',
        '{"confirm_token": {"id": 1, "sig": 2}}',
    ],
)
def test_corrupt_payload_raises(raw: str) -> None:
    with pytest.raises(StateCorruptionError):
        SwitchState.from_json(raw)


def test_window_consistency_checks() -> None:
    assert _state().window_is_consistent()
    assert not _state(cycle_start_at=0).window_is_consistent()
    assert not _state(next_check_at=0).window_is_consistent()
    assert not _state(deadline_at=T0 + 300).window_is_consistent()


def test_with_escalation_cleared_drops_ack_substate() -> None:
    state = _state(
        escalated_sent_at=T0,
        ack_token=Token(id="c" * 32, sig="d" * 64),
        ack_at=T0 + 5,
        ack_sent_count=2,
        ack_next_at=T0 + 100,
    )
    cleared = state.with_escalation_cleared()
    assert cleared.escalated_sent_at is None
    assert cleared.ack_token is None
    assert cleared.ack_at is None
    assert cleared.ack_sent_count == 0
    assert cleared.ack_next_at is None
