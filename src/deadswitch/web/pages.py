from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, tzinfo
from html import escape

from deadswitch.domain.state import SwitchState
from deadswitch.domain.switch_config import SwitchConfig
from deadswitch.services.gateway import GatewayResponse, ResponseKind
from deadswitch.services.messages import format_timestamp

DETAILS_DATETIME_FORMAT = "%-d %B %Y at %H:%M:%S"

_DURATION_UNITS = (
    ("year", 31536000),
    ("month", 2592000),
    ("week", 604800),
    ("day", 86400),
    ("hour", 3600),
    ("minute", 60),
    ("second", 1),
)


@dataclass(frozen=True)
class PageSettings:
    show_success_details: bool = False
    timezone: tzinfo = UTC
    switch_config: SwitchConfig | None = None
    css_href: str | None = None


def human_duration(seconds: int) -> str:
    remaining = max(0, seconds)
    parts: list[str] = []
    for name, size in _DURATION_UNITS:
        if remaining < size:
            continue
        qty, remaining = divmod(remaining, size)
        parts.append(f"{qty} {name}{'' if qty == 1 else 's'}")
    if not parts:
        return "0 seconds"
    if len(parts) == 1:
        return parts[0]
    return f"{', '.join(parts[:-1])} and {parts[-1]}"


def _cycles_required_text(count: int) -> str:
    if count == 1:
        return "1 missed cycle is required before escalation can trigger."
    return f"{count} missed cycles are required before escalation can trigger."


def _cycles_current_text(count: int) -> str:
    if count == 0:
        return "No missed cycles are currently recorded in state."
    if count == 1:
        return "1 missed cycle is currently recorded in state."
    return f"{count} missed cycles are currently recorded in state."


def render_page(title: str, body_html: str, *, css_href: str | None = None) -> str:
    css_link = f'<link rel="stylesheet" href="{escape(css_href)}">' if css_href else ""
    return (
        '<!doctype html><html lang="en"><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width,initial-scale=1">'
        '<meta name="robots" content="noindex,nofollow">'
        f"<title>{escape(title)}</title>{css_link}</head>"
        f'<body><main class="ds_shell"><section class="ds_card">{body_html}</section></main>'
        "</body></html>"
    )


def neutral_page(settings: PageSettings) -> str:
    return render_page(
        "Request received",
        "<h1>Request received</h1><p>Your request has been received.</p>"
        "<p>For security reasons, no further details are shown on this page.</p>",
        css_href=settings.css_href,
    )


def _token_form(action: str, label: str, token_id: str, token_sig: str) -> str:
    return (
        '<form method="post">'
        f'<input type="hidden" name="a" value="{escape(action)}">'
        f'<input type="hidden" name="id" value="{escape(token_id)}">'
        f'<input type="hidden" name="sig" value="{escape(token_sig)}">'
        f'<button type="submit">{escape(label)}</button></form>'
    )


def confirm_prompt_page(settings: PageSettings, token_id: str, token_sig: str) -> str:
    return render_page(
        "Confirm",
        "<h1>Confirm</h1><p>Please click the button to confirm.</p>"
        + _token_form("confirm", "Confirm", token_id, token_sig),
        css_href=settings.css_href,
    )


def ack_prompt_page(settings: PageSettings, token_id: str, token_sig: str) -> str:
    return render_page(
        "Acknowledge",
        "<h1>Acknowledge</h1><p>Please click the button to acknowledge receipt.</p>"
        + _token_form("ack", "Acknowledge", token_id, token_sig),
        css_href=settings.css_href,
    )


def _confirm_details(settings: PageSettings, state: SwitchState) -> str:
    def dt(ts: int) -> str:
        return escape(format_timestamp(ts, settings.timezone, DETAILS_DATETIME_FORMAT))

    items = [
        f"The current cycle started on {dt(state.cycle_start_at)}.",
        f"The last successful confirmation was recorded on {dt(state.last_confirm_at)}.",
        f"The confirmation window opens on {dt(state.next_check_at)}.",
        f"The confirmation deadline for this cycle is {dt(state.deadline_at)}.",
        f"The next reminder is scheduled for {dt(state.next_reminder_at)}.",
    ]
    html = "<ul><li>" + "</li><li>".join(items) + "</li></ul>"

    config = settings.switch_config
    if config is not None:
        cycle_items = [
            f"{human_duration(config.check_interval_seconds)} before the confirmation window opens.",
            f"{human_duration(config.confirm_window_seconds)} for the confirmation window.",
            f"Reminders repeat every {human_duration(config.remind_every_seconds)} "
            "while the window is open.",
            f"An additional {human_duration(config.escalate_grace_seconds)} grace period "
            "after the deadline before escalation is considered.",
            _cycles_required_text(config.missed_cycles_before_fire),
            _cycles_current_text(state.missed_cycles),
        ]
        html += (
            "<h2>Cycle reset.</h2><ul><li>"
            + "</li><li>".join(escape(item) for item in cycle_items)
            + "</li></ul>"
        )
    return html


def confirmed_page(settings: PageSettings, state: SwitchState | None) -> str:
    body = "<h1>Confirmed!</h1>"
    if settings.show_success_details and state is not None:
        body += _confirm_details(settings, state)
    return render_page("Confirmed", body, css_href=settings.css_href)


def acknowledged_page(settings: PageSettings) -> str:
    return render_page(
        "Request received",
        "<h1>Request received</h1>"
        "<p>Your acknowledgement has been recorded successfully.</p>"
        "<p>You will not receive further escalation emails for this incident.</p>"
        "<p>Please now act in accordance with the sender's stated wishes and follow the "
        "instructions provided in the received message.</p><p>Thank you!</p>",
        css_href=settings.css_href,
    )


def error_page(settings: PageSettings, code: str) -> str:
    return render_page(
        "Request received",
        "<h1>Something went wrong</h1><p>Please try again later.</p>"
        f'<p class="ds_note">Error code: <code>{escape(code)}</code></p>',
        css_href=settings.css_href,
    )


def render_response(response: GatewayResponse, settings: PageSettings) -> str:
    if response.kind is ResponseKind.CONFIRM_PROMPT:
        return confirm_prompt_page(settings, response.token_id, response.token_sig)
    if response.kind is ResponseKind.ACK_PROMPT:
        return ack_prompt_page(settings, response.token_id, response.token_sig)
    if response.kind is ResponseKind.CONFIRMED:
        return confirmed_page(settings, response.state)
    if response.kind is ResponseKind.ACKNOWLEDGED:
        return acknowledged_page(settings)
    if response.kind is ResponseKind.ERROR and response.code:
        return error_page(settings, response.code)
    return neutral_page(settings)
