from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence

from deadswitch.config import Settings, load_settings
from deadswitch.domain.cycle_engine import CycleEngine
from deadswitch.errors import (
    ConfigurationError,
    DeadSwitchError,
    DeliveryError,
    LockUnavailableError,
    StateWriteError,
)
from deadswitch.logging_context import with_logging_context
from deadswitch.logging_utils import setup_logging
from deadswitch.obs.logging import get_logger, run_id
from deadswitch.security.redaction import sanitize_mapping
from deadswitch.services.messages import MailSettings, MessageRenderer
from deadswitch.services.notifier import build_notifier
from deadswitch.services.preflight import EXIT_FAIL, preflight_exit_code, preflight_status, run_preflight
from deadswitch.services.process_lock import switch_lock
from deadswitch.services.state_store import StateStore
from deadswitch.services.tick_runner import TickRunner, epoch_now

logger = get_logger(__name__)


def _build_engine(settings: Settings) -> CycleEngine:
    return CycleEngine(settings.switch_config(), settings.token_authority())


def run_tick(settings: Settings) -> int:
    try:
        runner = TickRunner(
            engine=_build_engine(settings),
            store=StateStore(settings.state_path()),
            lock_path=settings.lock_path(),
            notifier=build_notifier(settings),
            renderer=MessageRenderer(MailSettings.from_settings(settings)),
        )
        outcome = runner.run()
    except ConfigurationError as exc:
        logger.error("tick_config_invalid", error=str(exc))
        return 1
    except LockUnavailableError as exc:
        logger.error("tick_lock_unavailable", error=str(exc))
        return 1
    except DeliveryError as exc:
        logger.error("tick_delivery_failed", error=str(exc))
        return 1
    except StateWriteError as exc:
        logger.error("tick_state_write_failed", error=str(exc))
        return 1
    except Exception as exc:  # noqa: BLE001
        logger.error("tick_failed", exc_info=True, error=str(exc))
        return 1

    logger.info(
        "tick_completed",
        events=[event.value for event in outcome.events],
        messages_sent=outcome.messages_sent,
        initialised=outcome.initialised,
    )
    return 0


def run_check(settings: Settings, *, json_output: bool = False) -> int:
    report = run_preflight(settings)
    status = preflight_status(report)
    if json_output:
        payload = {
            "status": status,
            "checks": [
                {
                    "category": check.category,
                    "name": check.name,
                    "status": check.status,
                    "message": check.message,
                }
                for check in report.checks
            ],
        }
        print(json.dumps(payload, indent=2))
    else:
        for check in report.checks:
            print(f"check: {check.status.upper()} [{check.category}] {check.name} - {check.message}")
        print(f"check_status={status.upper()}")
    return preflight_exit_code(report)


def run_status(settings: Settings) -> int:
    store = StateStore(settings.state_path())
    state = store.load()
    if state is None:
        print(json.dumps({"state": None, "path": str(store.path)}, indent=2))
        return 0
    try:
        engine = _build_engine(settings)
        phase = engine.describe_phase(state, epoch_now()).value
    except ConfigurationError as exc:
        logger.warning("status_phase_unavailable", error=str(exc))
        phase = None
    payload = {
        "path": str(store.path),
        "phase": phase,
        "state": sanitize_mapping(state.to_payload()),
    }
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def run_reset(settings: Settings, *, confirmed: bool) -> int:
    if not confirmed:
        print("reset: refusing without --i-understand", file=sys.stderr)
        return 2
    try:
        engine = _build_engine(settings)
        store = StateStore(settings.state_path())
        with switch_lock(settings.lock_path()):
            now = epoch_now()
            state = store.load()
            state = engine.initialise(now) if state is None else engine.reset(state, now)
            store.save(state)
    except DeadSwitchError as exc:
        logger.error("reset_failed", error=str(exc))
        return 1
    logger.warning(
        "state_reset",
        cycle_start_at=state.cycle_start_at,
        next_check_at=state.next_check_at,
        deadline_at=state.deadline_at,
    )
    return 0


def run_serve(settings: Settings, *, host: str, port: int) -> int:
    import uvicorn

    from deadswitch.web.app import create_app

    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deadswitch",
        epilog="Run `deadswitch tick` from cron or a systemd timer; serve the confirm endpoint "
        "with `deadswitch serve` behind a TLS terminating proxy.",
    )
    parser.add_argument("--env-file", default=None, help="Optional dotenv file with settings")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("tick", help="Run one cycle evaluation (reminders, escalation, ack)")

    check_parser = subparsers.add_parser("check", help="Read-only readiness checks")
    check_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    subparsers.add_parser("status", help="Print the current phase and state (tokens redacted)")

    reset_parser = subparsers.add_parser("reset", help="Start a fresh cycle and clear escalation")
    reset_parser.add_argument(
        "--i-understand",
        dest="i_understand",
        action="store_true",
        help="Required: acknowledges that missed cycles and escalation state are discarded",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the confirmation web endpoint")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env_file)
    except ConfigurationError as exc:
        setup_logging(None)
        logger.error("settings_invalid", command=args.command, error=str(exc))
        return EXIT_FAIL if args.command == "check" else 1

    setup_logging(settings.log_level)
    with with_logging_context(run_id=run_id(), command=args.command):
        logger.debug("command_started")
        if args.command == "tick":
            return run_tick(settings)
        if args.command == "check":
            return run_check(settings, json_output=args.json)
        if args.command == "status":
            return run_status(settings)
        if args.command == "reset":
            return run_reset(settings, confirmed=args.i_understand)
        if args.command == "serve":
            return run_serve(settings, host=args.host, port=args.port)
    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
