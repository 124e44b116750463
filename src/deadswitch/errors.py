from __future__ import annotations


class DeadSwitchError(Exception):
    """Base class for all deadswitch failures."""


class ConfigurationError(DeadSwitchError):
    """Raised when settings, the HMAC secret or recipient lists are unusable."""


class LockUnavailableError(DeadSwitchError):
    """Raised when the switch lock file cannot be created, opened or locked."""


class StateCorruptionError(DeadSwitchError):
    """Raised when a persisted state payload cannot be decoded into a SwitchState."""


class StateWriteError(DeadSwitchError):
    """Raised when the state record cannot be written or renamed into place."""


class TokenError(DeadSwitchError):
    """Raised when a token payload is malformed."""


class DeliveryError(DeadSwitchError):
    """Raised by a notifier when a message could not be handed off."""
