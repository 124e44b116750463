from __future__ import annotations

from datetime import UTC

import pytest

from deadswitch.domain.state import STATE_VERSION, SwitchState, Token
from deadswitch.services.gateway import NEUTRAL, GatewayResponse, ResponseKind
from deadswitch.web.pages import PageSettings, human_duration, render_response

T0 = 1_700_000_000


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [
        (0, "0 seconds"),
        (1, "1 second"),
        (90, "1 minute and 30 seconds"),
        (3 * 86400 + 3600 + 5, "3 days, 1 hour and 5 seconds"),
        (14 * 86400, "2 weeks"),
    ],
)
def test_human_duration(seconds: int, expected: str) -> None:
    assert human_duration(seconds) == expected


def _state() -> SwitchState:
    return SwitchState(
        version=STATE_VERSION,
        created_at=T0,
        last_tick_at=T0 + 310,
        cycle_start_at=T0 + 310,
        next_check_at=T0 + 610,
        deadline_at=T0 + 850,
        next_reminder_at=T0 + 610,
        last_confirm_at=T0 + 310,
        confirm_token=Token(id="a" * 32, sig="b" * 64),
    )


def test_neutral_page_reveals_nothing() -> None:
    html = render_response(NEUTRAL, PageSettings())
    assert "Request received" in html
    assert "noindex" in html
    assert "<form" not in html


def test_error_without_code_renders_neutral() -> None:
    html = render_response(GatewayResponse(kind=ResponseKind.ERROR), PageSettings())
    assert html == render_response(NEUTRAL, PageSettings())


def test_prompt_escapes_token_values() -> None:
    response = GatewayResponse(
        kind=ResponseKind.CONFIRM_PROMPT, token_id='"><script>', token_sig="b" * 64
    )
    html = render_response(response, PageSettings())
    assert "<script>" not in html
    assert 'name="a" value="confirm"' in html


def test_confirmed_page_details(make_config) -> None:
    settings = PageSettings(show_success_details=True, timezone=UTC, switch_config=make_config())
    html = render_response(
        GatewayResponse(kind=ResponseKind.CONFIRMED, state=_state()), settings
    )
    assert "Confirmed!" in html
    assert "The current cycle started on 14 November 2023 at 22:18:30." in html
    assert "The confirmation deadline for this cycle is 14 November 2023 at 22:27:30." in html
    assert "5 minutes before the confirmation window opens." in html
    assert "1 missed cycle is required before escalation can trigger." in html
    assert "No missed cycles are currently recorded in state." in html


def test_confirmed_page_without_details() -> None:
    html = render_response(
        GatewayResponse(kind=ResponseKind.CONFIRMED, state=_state()), PageSettings()
    )
    assert "Confirmed!" in html
    assert "<ul>" not in html


def test_css_link_is_optional() -> None:
    assert "stylesheet" not in render_response(NEUTRAL, PageSettings())
    styled = render_response(NEUTRAL, PageSettings(css_href="/static/ds.css"))
    assert '<link rel="stylesheet" href="/static/ds.css">' in styled
