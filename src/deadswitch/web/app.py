from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse
from starlette.middleware.base import BaseHTTPMiddleware

from deadswitch import __version__
from deadswitch.config import Settings, load_settings
from deadswitch.domain.cycle_engine import CycleEngine
from deadswitch.errors import DeadSwitchError
from deadswitch.logging_context import with_request_context
from deadswitch.obs.logging import get_logger
from deadswitch.services.gateway import (
    ACTION_CONFIRM,
    NEUTRAL,
    ConfirmationGateway,
    GatewayConfig,
    GatewayRequest,
)
from deadswitch.services.messages import resolve_timezone
from deadswitch.services.rate_limiter import build_rate_limiter, resolve_client_id
from deadswitch.services.state_store import StateStore
from deadswitch.web.pages import PageSettings, neutral_page, render_response

logger = get_logger(__name__)

SECURITY_HEADERS = {
    "Cache-Control": "no-store, max-age=0",
    "Pragma": "no-cache",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "X-Robots-Tag": "noindex, nofollow",
}

_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
_MAX_FORM_BYTES = 8192


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response


@dataclass(frozen=True)
class ClientIdentityPolicy:
    ip_mode: str = "remote_addr"
    trusted_proxies: tuple[str, ...] = ()
    proxy_header: str = "X-Forwarded-For"

    @classmethod
    def from_settings(cls, settings: Settings) -> ClientIdentityPolicy:
        return cls(
            ip_mode=settings.ip_mode,
            trusted_proxies=tuple(settings.trusted_proxies),
            proxy_header=settings.trusted_proxy_header,
        )

    def client_id(self, request: Request) -> str:
        return resolve_client_id(
            request.client.host if request.client else None,
            request.headers,
            ip_mode=self.ip_mode,
            trusted_proxies=self.trusted_proxies,
            proxy_header=self.proxy_header,
        )


def build_gateway(settings: Settings) -> ConfirmationGateway:
    tokens = settings.token_authority()
    return ConfirmationGateway(
        config=GatewayConfig.from_settings(settings),
        engine=CycleEngine(settings.switch_config(), tokens),
        tokens=tokens,
        store=StateStore(settings.state_path()),
        lock_path=settings.lock_path(),
        rate_limiter=build_rate_limiter(
            enabled=settings.rate_limit_enabled,
            directory=settings.rate_limit_path(),
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        ),
    )


def build_page_settings(settings: Settings) -> PageSettings:
    try:
        switch_config = settings.switch_config()
    except DeadSwitchError:
        switch_config = None
    return PageSettings(
        show_success_details=settings.show_success_details,
        timezone=resolve_timezone(settings.mail_timezone),
        switch_config=switch_config,
        css_href=settings.web_css_href,
    )


async def _request_params(request: Request) -> dict[str, str]:
    params = {key: value for key, value in request.query_params.items()}
    if request.method != "POST":
        return params
    content_type = request.headers.get("content-type", "")
    if not content_type.lower().startswith(_FORM_CONTENT_TYPE):
        return params
    body = await request.body()
    if len(body) > _MAX_FORM_BYTES:
        return params
    for key, value in parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True):
        params[key] = value
    return params


def create_app(
    settings: Settings | None = None,
    *,
    gateway: ConfirmationGateway | None = None,
    page_settings: PageSettings | None = None,
) -> FastAPI:
    """Build the confirmation endpoint.

    A configuration problem at start-up does not stop the app: every request
    is then answered with the neutral page.
    """
    if settings is None:
        try:
            settings = load_settings()
        except DeadSwitchError as exc:
            logger.error("web_bootstrap_failed", error=str(exc))
            settings = None

    if gateway is None and settings is not None:
        try:
            gateway = build_gateway(settings)
        except DeadSwitchError as exc:
            logger.error("web_bootstrap_failed", error=str(exc))
            gateway = None

    if page_settings is None:
        page_settings = build_page_settings(settings) if settings is not None else PageSettings()
    identity = (
        ClientIdentityPolicy.from_settings(settings)
        if settings is not None
        else ClientIdentityPolicy()
    )
    web_path = settings.web_path.strip().strip("/") if settings is not None else "deadswitch"

    app = FastAPI(title="deadswitch", version=__version__, docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(SecurityHeadersMiddleware)

    async def endpoint(request: Request) -> HTMLResponse:
        request_id = uuid.uuid4().hex
        response = NEUTRAL
        try:
            params = await _request_params(request)
            client_id = identity.client_id(request)
            action = params.get("a", ACTION_CONFIRM) or ACTION_CONFIRM
            with with_request_context(request_id, action, client_id):
                if gateway is None:
                    logger.warning("web_gateway_unavailable")
                else:
                    response = await run_in_threadpool(
                        gateway.handle,
                        GatewayRequest(
                            action=action,
                            token_id=params.get("id", ""),
                            token_sig=params.get("sig", ""),
                            method=request.method,
                            client_id=client_id,
                        ),
                    )
                html = render_response(response, page_settings)
        except Exception as exc:  # noqa: BLE001
            logger.error("web_request_failed", error=type(exc).__name__, request_id=request_id)
            html = neutral_page(page_settings)
        return HTMLResponse(html, status_code=200)

    app.add_api_route(
        f"/{web_path}" if web_path else "/",
        endpoint,
        methods=["GET", "POST"],
        response_class=HTMLResponse,
        include_in_schema=False,
    )
    return app
