from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urlencode

from deadswitch.domain.state import Token
from deadswitch.errors import ConfigurationError, TokenError

MIN_SECRET_BYTES = 16
TOKEN_ID_BYTES = 16

_TOKEN_ID_PATTERN = re.compile(r"^[a-f0-9]{32}$")
_TOKEN_SIG_PATTERN = re.compile(r"^[a-f0-9]{64}$")
_HEX_PATTERN = re.compile(r"^[a-fA-F0-9]+$")


def decode_secret_hex(secret_hex: str) -> bytes:
    candidate = (secret_hex or "").strip()
    if not candidate or len(candidate) % 2 != 0 or not _HEX_PATTERN.fullmatch(candidate):
        raise ConfigurationError(
            f"HMAC secret must be hex encoded with at least {MIN_SECRET_BYTES} bytes"
        )
    secret = bytes.fromhex(candidate)
    if len(secret) < MIN_SECRET_BYTES:
        raise ConfigurationError(
            f"HMAC secret must be hex encoded with at least {MIN_SECRET_BYTES} bytes"
        )
    return secret


def compute_signature(secret: bytes, token_id: str) -> str:
    return hmac.new(secret, token_id.encode("ascii"), hashlib.sha256).hexdigest()


def is_well_formed(token_id: str, token_sig: str) -> bool:
    return bool(_TOKEN_ID_PATTERN.fullmatch(token_id)) and bool(
        _TOKEN_SIG_PATTERN.fullmatch(token_sig)
    )


def parse_token(token_id: object, token_sig: object) -> Token:
    if not isinstance(token_id, str) or not isinstance(token_sig, str):
        raise TokenError("token id/sig must be strings")
    if not is_well_formed(token_id, token_sig):
        raise TokenError("token id/sig are malformed")
    return Token(id=token_id, sig=token_sig)


def is_current(live: Token | None, token_id: str, token_sig: str) -> bool:
    """True when both halves of the presented token match the live record."""
    if live is None:
        return False
    id_match = hmac.compare_digest(live.id.encode(), token_id.encode())
    sig_match = hmac.compare_digest(live.sig.encode(), token_sig.encode())
    return id_match and sig_match


@dataclass(frozen=True)
class TokenAuthority:
    """Issues and verifies stateless HMAC-signed confirmation and ack tokens."""

    secret: bytes = field(repr=False)
    random_hex: Callable[[int], str] = field(default=secrets.token_hex, repr=False)

    def __post_init__(self) -> None:
        if len(self.secret) < MIN_SECRET_BYTES:
            raise ConfigurationError(
                f"HMAC secret must provide at least {MIN_SECRET_BYTES} bytes of entropy"
            )

    @classmethod
    def from_hex(cls, secret_hex: str) -> TokenAuthority:
        return cls(secret=decode_secret_hex(secret_hex))

    def issue(self) -> Token:
        token_id = self.random_hex(TOKEN_ID_BYTES)
        return Token(id=token_id, sig=compute_signature(self.secret, token_id))

    def verify(self, token_id: str, token_sig: str) -> bool:
        if not isinstance(token_id, str) or not isinstance(token_sig, str):
            return False
        if not is_well_formed(token_id, token_sig):
            return False
        return hmac.compare_digest(compute_signature(self.secret, token_id), token_sig)

    def verify_token(self, token: Token | None) -> bool:
        if token is None:
            return False
        return self.verify(token.id, token.sig)


def build_action_url(endpoint: str, action: str, token: Token) -> str:
    base = endpoint.rstrip("?")
    separator = "&" if "?" in base else "?"
    query = urlencode({"a": action, "id": token.id, "sig": token.sig})
    return f"{base}{separator}{query}"
