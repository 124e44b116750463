from __future__ import annotations

import re
from collections.abc import Iterable
from email.utils import parseaddr

from deadswitch.domain.switch_config import EscalationRecipient, is_valid_message_id

_MAILBOX_PATTERN = re.compile(r"^[^\s@<>\",;:]+@[^\s@<>\",;:]+\.[^\s@<>\",;:]+$")


def _strip_line_breaks(value: str) -> str:
    return value.replace("\r", "").replace("\n", "").strip()


def mailbox_of(entry: str) -> str:
    """Return the bare address of ``Name <addr>`` or ``addr`` entries."""
    cleaned = _strip_line_breaks(entry)
    _, address = parseaddr(cleaned)
    return (address or cleaned).strip()


def is_valid_mailbox(address: str) -> bool:
    if not address or "@" not in address:
        return False
    local, _, domain = address.rpartition("@")
    try:
        ascii_domain = domain.encode("idna").decode("ascii")
    except UnicodeError:
        ascii_domain = domain
    return bool(_MAILBOX_PATTERN.fullmatch(f"{local}@{ascii_domain}"))


def parse_mailbox_entries(entries: Iterable[str]) -> tuple[str, ...]:
    """Expand comma separated entries into unique, valid mailbox entries.

    Display names are preserved; uniqueness is decided on the lower-cased
    address. Invalid entries are dropped.
    """
    seen: set[str] = set()
    parsed: list[str] = []
    for raw_entry in entries:
        for part in _strip_line_breaks(str(raw_entry)).split(","):
            part = part.strip()
            if not part:
                continue
            address = mailbox_of(part)
            if not is_valid_mailbox(address):
                continue
            key = address.lower()
            if key in seen:
                continue
            seen.add(key)
            parsed.append(part)
    return tuple(parsed)


def parse_escalation_entries(entries: Iterable[str | tuple[str, ...] | list[str]]) -> tuple[
    EscalationRecipient, ...
]:
    """Parse escalation recipients given as ``addr``, ``addr|id`` or ``[addr, id]``.

    Malformed message ids are ignored (the default escalation text is used),
    malformed mailboxes are skipped.
    """
    parsed: list[EscalationRecipient] = []
    for entry in entries:
        if isinstance(entry, (list, tuple)):
            if not entry:
                continue
            address_raw = str(entry[0])
            message_id_raw = str(entry[1]) if len(entry) > 1 and entry[1] is not None else ""
        else:
            address_raw, _, message_id_raw = str(entry).partition("|")

        address = _strip_line_breaks(address_raw)
        if not address or not is_valid_mailbox(mailbox_of(address)):
            continue
        message_id = _strip_line_breaks(message_id_raw)
        if not is_valid_message_id(message_id):
            message_id = ""
        parsed.append(EscalationRecipient(address=address, message_id=message_id))
    return tuple(parsed)
