from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from deadswitch.config import Settings
from deadswitch.domain.cycle_engine import CycleEngine
from deadswitch.domain.state import SwitchState
from deadswitch.errors import LockUnavailableError, TokenError
from deadswitch.obs.logging import get_logger
from deadswitch.security.tokens import TokenAuthority, is_current, parse_token
from deadswitch.services.process_lock import switch_lock
from deadswitch.services.rate_limiter import RateLimiter
from deadswitch.services.state_store import StateStore
from deadswitch.services.tick_runner import epoch_now

logger = get_logger(__name__)

ACTION_CONFIRM = "confirm"
ACTION_ACK = "ack"
_ACTIONS = frozenset({ACTION_CONFIRM, ACTION_ACK})


class ResponseKind(StrEnum):
    NEUTRAL = "neutral"
    CONFIRM_PROMPT = "confirm_prompt"
    ACK_PROMPT = "ack_prompt"
    CONFIRMED = "confirmed"
    ACKNOWLEDGED = "acknowledged"
    ERROR = "error"


@dataclass(frozen=True)
class GatewayRequest:
    action: str
    token_id: str
    token_sig: str
    method: str = "GET"
    client_id: str = "0.0.0.0"

    @property
    def is_post(self) -> bool:
        return self.method.upper() == "POST"


@dataclass(frozen=True)
class GatewayResponse:
    kind: ResponseKind
    code: str | None = None
    state: SwitchState | None = None
    token_id: str = ""
    token_sig: str = ""


NEUTRAL = GatewayResponse(kind=ResponseKind.NEUTRAL)


@dataclass(frozen=True)
class GatewayConfig:
    ack_enabled: bool = False
    ack_require_post: bool = True
    stealth_neutral_for_invalid: bool = True
    stealth_neutral_on_stale: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> GatewayConfig:
        return cls(
            ack_enabled=settings.is_ack_effective(),
            ack_require_post=settings.ack_require_post,
            stealth_neutral_for_invalid=settings.stealth_neutral_for_invalid,
            stealth_neutral_on_stale=settings.stealth_neutral_on_stale,
        )


@dataclass
class _Attempt:
    request: GatewayRequest
    now: int
    token_current: bool = False


def _error_code(prefix: str) -> str:
    return f"{prefix}{secrets.token_hex(4)}"


class ConfirmationGateway:
    """Authenticates confirm/ack requests and applies them under the switch lock.

    Each stage returns either ``None`` to continue or a terminal response.
    Failures before a current token was proven always collapse into the
    neutral response.
    """

    def __init__(
        self,
        *,
        config: GatewayConfig,
        engine: CycleEngine,
        tokens: TokenAuthority,
        store: StateStore,
        lock_path: str | Path,
        rate_limiter: RateLimiter,
        clock: Callable[[], int] = epoch_now,
    ) -> None:
        self._config = config
        self._engine = engine
        self._tokens = tokens
        self._store = store
        self._lock_path = lock_path
        self._rate_limiter = rate_limiter
        self._clock = clock

    def handle(self, request: GatewayRequest) -> GatewayResponse:
        attempt = _Attempt(request=request, now=self._clock())
        for stage in (self._rate_limit_stage, self._action_stage, self._token_stage):
            response = stage(attempt)
            if response is not None:
                return response
        return self._locked_stage(attempt)

    def _rate_limit_stage(self, attempt: _Attempt) -> GatewayResponse | None:
        if self._rate_limiter.allow(attempt.request.client_id, attempt.now):
            return None
        logger.warning("web_rate_limited")
        return NEUTRAL

    def _action_stage(self, attempt: _Attempt) -> GatewayResponse | None:
        if attempt.request.action in _ACTIONS:
            return None
        logger.info("web_unknown_action")
        return NEUTRAL

    def _token_stage(self, attempt: _Attempt) -> GatewayResponse | None:
        request = attempt.request
        try:
            presented = parse_token(request.token_id, request.token_sig)
        except TokenError as exc:
            logger.info("web_token_malformed", error=str(exc))
            return self._invalid()
        if self._tokens.verify_token(presented):
            return None
        logger.info("web_token_invalid")
        return self._invalid()

    def _invalid(self) -> GatewayResponse:
        if self._config.stealth_neutral_for_invalid:
            return NEUTRAL
        return GatewayResponse(kind=ResponseKind.ERROR, code=_error_code("E_TOKEN_INVALID_"))

    def _locked_stage(self, attempt: _Attempt) -> GatewayResponse:
        action = attempt.request.action
        try:
            with switch_lock(self._lock_path):
                state = self._store.load()
                if state is None:
                    logger.warning("web_state_missing")
                    return NEUTRAL
                if action == ACTION_CONFIRM:
                    return self._confirm_stage(attempt, state)
                return self._ack_stage(attempt, state)
        except LockUnavailableError as exc:
            logger.error("web_lock_unavailable", error=str(exc))
            return NEUTRAL
        except Exception as exc:  # noqa: BLE001
            prefix = "E_ACK_FAIL_" if action == ACTION_ACK else "E_CONFIRM_FAIL_"
            code = _error_code(prefix)
            logger.error(
                "web_transition_failed",
                exc_info=True,
                code=code,
                credential_current=attempt.token_current,
                error=str(exc),
            )
            if attempt.token_current:
                return GatewayResponse(kind=ResponseKind.ERROR, code=code)
            return NEUTRAL

    def _stale(self, event: str, prefix: str) -> GatewayResponse:
        logger.info(event)
        if self._config.stealth_neutral_on_stale:
            return NEUTRAL
        return GatewayResponse(kind=ResponseKind.ERROR, code=_error_code(prefix))

    def _confirm_stage(self, attempt: _Attempt, state: SwitchState) -> GatewayResponse:
        request = attempt.request
        attempt.token_current = is_current(state.confirm_token, request.token_id, request.token_sig)
        if not attempt.token_current:
            return self._stale("confirm_stale_token", "E_TOKEN_STALE_")
        if state.is_escalated:
            return self._stale("confirm_blocked_after_escalation", "E_CONFIRM_BLOCKED_")
        if not request.is_post:
            return GatewayResponse(
                kind=ResponseKind.CONFIRM_PROMPT,
                token_id=request.token_id,
                token_sig=request.token_sig,
            )

        confirmed = self._engine.apply_confirm(state, attempt.now)
        self._store.save(confirmed)
        logger.info("confirm_ok", next_check_at=confirmed.next_check_at)
        return GatewayResponse(kind=ResponseKind.CONFIRMED, state=confirmed)

    def _ack_stage(self, attempt: _Attempt, state: SwitchState) -> GatewayResponse:
        request = attempt.request
        if not self._config.ack_enabled:
            logger.info("ack_disabled")
            return NEUTRAL
        attempt.token_current = is_current(state.ack_token, request.token_id, request.token_sig)
        if not attempt.token_current:
            return self._stale("ack_stale_token", "E_TOKEN_STALE_")
        if self._config.ack_require_post and not request.is_post:
            return GatewayResponse(
                kind=ResponseKind.ACK_PROMPT,
                token_id=request.token_id,
                token_sig=request.token_sig,
            )

        acknowledged = self._engine.apply_ack(state, attempt.now)
        self._store.save(acknowledged)
        logger.info("ack_ok", ack_at=acknowledged.ack_at)
        return GatewayResponse(kind=ResponseKind.ACKNOWLEDGED, state=acknowledged)
