"""Dead man's switch with signed confirmation links and escalation handshake."""

__version__ = "0.1.0"
