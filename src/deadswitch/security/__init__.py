from deadswitch.security.redaction import (
    REDACTED,
    SENSITIVE_KEYS,
    redact_data,
    redact_value,
    sanitize_mapping,
    sanitize_text,
)
from deadswitch.security.tokens import (
    TokenAuthority,
    build_action_url,
    compute_signature,
    decode_secret_hex,
    is_current,
    parse_token,
)

__all__ = [
    "REDACTED",
    "SENSITIVE_KEYS",
    "redact_data",
    "redact_value",
    "sanitize_mapping",
    "sanitize_text",
    "TokenAuthority",
    "build_action_url",
    "compute_signature",
    "decode_secret_hex",
    "is_current",
    "parse_token",
]
