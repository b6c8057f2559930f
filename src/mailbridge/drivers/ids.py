"""Composite message identifiers carrying the mailbox alongside the UID."""

from __future__ import annotations

from dataclasses import dataclass

from ..core.errors import NotFoundError

SEPARATOR = ":"


@dataclass(frozen=True, slots=True)
class MessageRef:
    """A ``(mailbox, uid)`` pair decoded from an opaque message id."""

    mailbox: str
    uid: str

    def encode(self) -> str:
        return encode_message_id(self.mailbox, self.uid)


def encode_message_id(mailbox: str, uid: str | int) -> str:
    """Return ``"<mailbox>:<uid>"``."""
    return f"{mailbox}{SEPARATOR}{uid}"


def decode_message_id(message_id: str, default_mailbox: str) -> MessageRef:
    """Split an id into mailbox and UID.

    Bare numeric ids refer to ``default_mailbox``. Mailbox paths may contain
    the separator themselves, so only the last one splits.

    Raises:
        NotFoundError: If no numeric UID can be recovered
    """
    candidate = message_id.strip()
    if candidate.isdigit():
        return MessageRef(mailbox=default_mailbox, uid=candidate)
    mailbox, separator, uid = candidate.rpartition(SEPARATOR)
    if not separator or not mailbox or not uid.isdigit():
        raise NotFoundError(f"Malformed message id '{message_id}'")
    return MessageRef(mailbox=mailbox, uid=uid)


__all__ = ["MessageRef", "SEPARATOR", "decode_message_id", "encode_message_id"]
