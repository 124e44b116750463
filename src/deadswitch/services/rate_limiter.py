from __future__ import annotations

import fcntl
import hashlib
import ipaddress
import json
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from deadswitch.obs.logging import get_logger

logger = get_logger(__name__)

FALLBACK_CLIENT_ID = "0.0.0.0"


class RateLimiter(Protocol):
    def allow(self, client_id: str, now: int) -> bool: ...


class AllowAllRateLimiter:
    def allow(self, client_id: str, now: int) -> bool:
        return True


@dataclass(frozen=True)
class RollingWindow:
    name: str
    max_requests: int
    window_seconds: int

    def validate(self) -> None:
        if self.max_requests < 1:
            raise ValueError(f"RollingWindow[{self.name}] max_requests must be >= 1")
        if self.window_seconds < 1:
            raise ValueError(f"RollingWindow[{self.name}] window_seconds must be >= 1")


class FileRateLimiter:
    """Per-client rolling window counter kept in one small JSON file per client.

    The limiter fails open: a missing directory, a lock failure or a garbled
    file all admit the request. Files live under ``<dir>/<h[:2]>/<h>.json``
    where ``h`` is the sha256 of the client identity, so raw addresses never
    touch the disk.
    """

    def __init__(self, directory: str | Path, window: RollingWindow) -> None:
        window.validate()
        self._directory = Path(directory).expanduser()
        self._window = window

    def path_for(self, client_id: str) -> Path:
        key = hashlib.sha256(client_id.encode("utf-8")).hexdigest()
        return self._directory / key[:2] / f"{key}.json"

    def allow(self, client_id: str, now: int) -> bool:
        path = self.path_for(client_id)
        try:
            path.parent.mkdir(mode=0o770, parents=True, exist_ok=True)
            fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o660)
        except OSError as exc:
            logger.debug("rate_limit_unavailable", error=str(exc))
            return True

        with os.fdopen(fd, "r+", encoding="utf-8") as fh:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            except OSError as exc:
                logger.debug("rate_limit_lock_failed", error=str(exc))
                return True
            try:
                hits = _recent_hits(fh.read(), cutoff=now - self._window.window_seconds)
                allowed = len(hits) < self._window.max_requests
                if allowed:
                    hits.append(now)
                fh.seek(0)
                fh.truncate(0)
                json.dump({"hits": hits, "last": now}, fh)
                fh.flush()
                return allowed
            except (OSError, ValueError) as exc:
                logger.debug("rate_limit_io_failed", error=str(exc))
                return True
            finally:
                try:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
                except OSError:
                    pass


def _recent_hits(raw: str, *, cutoff: int) -> list[int]:
    if not raw.strip():
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(data, Mapping):
        return []
    hits = data.get("hits")
    if not isinstance(hits, list):
        return []
    recent: list[int] = []
    for hit in hits:
        if isinstance(hit, bool) or not isinstance(hit, (int, float)):
            continue
        if int(hit) >= cutoff:
            recent.append(int(hit))
    return recent


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def resolve_client_id(
    remote_addr: str | None,
    headers: Mapping[str, str],
    *,
    ip_mode: str,
    trusted_proxies: Iterable[str],
    proxy_header: str,
) -> str:
    """Pick the identity the rate limiter keys on.

    In ``trusted_proxy`` mode the first address of the forwarding header is used,
    but only when the direct peer is one of the configured proxies.
    """
    remote = (remote_addr or "").strip() or FALLBACK_CLIENT_ID
    if ip_mode != "trusted_proxy" or remote not in set(trusted_proxies):
        return remote

    forwarded = ""
    for name, value in headers.items():
        if name.lower() == proxy_header.lower():
            forwarded = value
            break
    first = forwarded.split(",", 1)[0].strip()
    return first if first and _is_ip(first) else remote


def build_rate_limiter(
    *, enabled: bool, directory: str | Path, max_requests: int, window_seconds: int
) -> RateLimiter:
    if not enabled:
        return AllowAllRateLimiter()
    return FileRateLimiter(
        directory,
        RollingWindow(name="gateway", max_requests=max_requests, window_seconds=window_seconds),
    )
