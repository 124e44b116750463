from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from deadswitch.services.rate_limiter import (
    AllowAllRateLimiter,
    FileRateLimiter,
    RollingWindow,
    build_rate_limiter,
    resolve_client_id,
)

T0 = 1_700_000_000


def _limiter(tmp_path: Path, max_requests: int = 3, window_seconds: int = 60) -> FileRateLimiter:
    return FileRateLimiter(tmp_path / "rl", RollingWindow("test", max_requests, window_seconds))


def test_allows_up_to_limit_then_blocks(tmp_path: Path) -> None:
    limiter = _limiter(tmp_path)
    assert [limiter.allow("198.51.100.7", T0 + i) for i in range(4)] == [True, True, True, False]


def test_window_rolls_forward(tmp_path: Path) -> None:
    limiter = _limiter(tmp_path, max_requests=2, window_seconds=60)
    assert limiter.allow("198.51.100.7", T0)
    assert limiter.allow("198.51.100.7", T0 + 30)
    assert not limiter.allow("198.51.100.7", T0 + 59)
    assert limiter.allow("198.51.100.7", T0 + 61)
    assert not limiter.allow("198.51.100.7", T0 + 62)


def test_clients_are_counted_separately(tmp_path: Path) -> None:
    limiter = _limiter(tmp_path, max_requests=1)
    assert limiter.allow("198.51.100.7", T0)
    assert not limiter.allow("198.51.100.7", T0)
    assert limiter.allow("198.51.100.8", T0)


def test_file_layout_hashes_client_identity(tmp_path: Path) -> None:
    limiter = _limiter(tmp_path)
    limiter.allow("198.51.100.7", T0)

    digest = hashlib.sha256(b"198.51.100.7").hexdigest()
    path = tmp_path / "rl" / digest[:2] / f"{digest}.json"
    assert limiter.path_for("198.51.100.7") == path
    assert json.loads(path.read_text(encoding="utf-8")) == {"hits": [T0], "last": T0}
    assert "198.51.100.7" not in path.read_text(encoding="utf-8")


@pytest.mark.parametrize("content", ["", "garbage", "[]", '{"hits": "x"}', '{"hits": [true, "a"]}'])
def test_garbled_file_is_treated_as_empty(tmp_path: Path, content: str) -> None:
    limiter = _limiter(tmp_path, max_requests=1)
    path = limiter.path_for("client")
    path.parent.mkdir(parents=True)
    path.write_text(content, encoding="utf-8")
    assert limiter.allow("client", T0)
    assert not limiter.allow("client", T0)


def test_unusable_directory_fails_open(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    limiter = FileRateLimiter(blocker, RollingWindow("test", 1, 60))
    assert all(limiter.allow("client", T0) for _ in range(5))


@pytest.mark.parametrize(("max_requests", "window_seconds"), [(0, 60), (5, 0)])
def test_invalid_window_is_rejected(tmp_path: Path, max_requests: int, window_seconds: int) -> None:
    with pytest.raises(ValueError, match="RollingWindow"):
        FileRateLimiter(tmp_path, RollingWindow("bad", max_requests, window_seconds))


def test_build_rate_limiter_disabled_allows_everything(tmp_path: Path) -> None:
    limiter = build_rate_limiter(enabled=False, directory=tmp_path, max_requests=1, window_seconds=1)
    assert isinstance(limiter, AllowAllRateLimiter)
    assert all(limiter.allow("client", T0) for _ in range(10))
    assert list(tmp_path.iterdir()) == []


def test_remote_addr_mode_ignores_forwarded_header() -> None:
    client_id = resolve_client_id(
        "127.0.0.1",
        {"X-Forwarded-For": "203.0.113.5"},
        ip_mode="remote_addr",
        trusted_proxies=["127.0.0.1"],
        proxy_header="X-Forwarded-For",
    )
    assert client_id == "127.0.0.1"


def test_trusted_proxy_uses_first_forwarded_address() -> None:
    client_id = resolve_client_id(
        "127.0.0.1",
        {"x-forwarded-for": "203.0.113.5, 10.0.0.1"},
        ip_mode="trusted_proxy",
        trusted_proxies=["127.0.0.1", "::1"],
        proxy_header="X-Forwarded-For",
    )
    assert client_id == "203.0.113.5"


@pytest.mark.parametrize(
    ("remote", "headers", "expected"),
    [
        ("192.0.2.1", {"X-Forwarded-For": "203.0.113.5"}, "192.0.2.1"),
        ("127.0.0.1", {"X-Forwarded-For": "not-an-ip"}, "127.0.0.1"),
        ("127.0.0.1", {}, "127.0.0.1"),
        (None, {}, "0.0.0.0"),
        ("", {"X-Forwarded-For": "203.0.113.5"}, "0.0.0.0"),
    ],
)
def test_trusted_proxy_fallbacks(remote, headers, expected) -> None:
    client_id = resolve_client_id(
        remote,
        headers,
        ip_mode="trusted_proxy",
        trusted_proxies=["127.0.0.1"],
        proxy_header="X-Forwarded-For",
    )
    assert client_id == expected
