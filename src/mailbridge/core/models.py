"""Core domain models used across the application."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal

LabelType = Literal["system", "folder"]

TEXT_BODY_TYPES = frozenset({"text/plain", "text/html"})


@dataclass(frozen=True, slots=True)
class Sender:
    """A display name and address pair."""

    email: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class Label:
    """Unified tag over IMAP flags (``system``) and folders (``folder``)."""

    id: str
    name: str
    type: LabelType


@dataclass(frozen=True, slots=True)
class AttachmentDescriptor:
    """Reference to a MIME body part, resolvable via (mailbox, id, part id)."""

    id: str
    name: str
    content_type: str
    size: int | None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class ParsedMessage:
    """Provider-neutral message view, rebuilt on every call."""

    id: str
    thread_id: str
    mailbox: str
    subject: str
    sender: Sender | None
    to: list[Sender]
    cc: list[Sender]
    bcc: list[Sender]
    body_plain: str | None
    body_html: str | None
    received_on: datetime
    sent_on: datetime
    read: bool
    labels: list[Label]
    attachments: list[AttachmentDescriptor]
    is_draft: bool = False
    message_id: str | None = None


@dataclass(slots=True)
class ThreadResponse:
    """Result of ``get``: one message presented as a single-message thread."""

    messages: list[ParsedMessage]
    latest: ParsedMessage
    has_unread: bool
    total_replies: int
    labels: list[Label]


@dataclass(frozen=True, slots=True)
class ThreadStub:
    """Identifier entry in a listing."""

    id: str


@dataclass(slots=True)
class ThreadList:
    """A page of thread identifiers plus the pagination hint."""

    threads: list[ThreadStub]
    next_page_token: str | None


@dataclass(slots=True)
class ParsedDraft:
    """Draft content as read back from the drafts folder."""

    id: str
    to: list[str]
    cc: list[str]
    bcc: list[str]
    subject: str | None
    content: str | None


@dataclass(slots=True)
class DraftResult:
    """Outcome of ``create_draft``."""

    id: str | None
    success: bool
    error: str | None = None


@dataclass(slots=True)
class OutgoingAttachment:
    """File supplied by the caller for an outgoing message."""

    filename: str
    content: bytes | str | None = None
    content_type: str | None = None
    path: str | None = None


@dataclass(slots=True)
class OutgoingMessage:
    """Message data supplied by the caller for ``create``/``send_draft``."""

    to: list[Sender]
    subject: str = ""
    message: str | None = None
    html_body: str | None = None
    cc: list[Sender] = field(default_factory=list)
    bcc: list[Sender] = field(default_factory=list)
    attachments: list[OutgoingAttachment] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    in_reply_to: str | None = None
    references: str | None = None


@dataclass(slots=True)
class MailSendOptions:
    """Fully resolved SMTP submission."""

    sender: str
    to: list[str]
    subject: str
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    text: str | None = None
    html: str | None = None
    attachments: list[OutgoingAttachment] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    in_reply_to: str | None = None
    references: str | None = None


@dataclass(frozen=True, slots=True)
class SendResult:
    """Message-ID assigned to a submission and the server's DATA reply."""

    message_id: str
    response: str


@dataclass(frozen=True, slots=True)
class LabelCount:
    """Message total for one folder; ``None`` when the folder failed."""

    label: str
    count: int | None


@dataclass(frozen=True, slots=True)
class UserInfo:
    """Basic account identity."""

    address: str
    name: str
    photo: str = ""


@dataclass(frozen=True, slots=True)
class EmailAlias:
    """Sendable address for the account."""

    email: str
    name: str | None = None
    primary: bool = False


# --- Protocol level records -------------------------------------------------


@dataclass(frozen=True, slots=True)
class Mailbox:
    """IMAP folder as reported by LIST."""

    path: str
    name: str
    delimiter: str | None = None
    flags: tuple[str, ...] = ()

    @property
    def selectable(self) -> bool:
        """Return ``False`` for ``\\Noselect`` containers."""
        lowered = {flag.lower() for flag in self.flags}
        return "\\noselect" not in lowered and "\\nonexistent" not in lowered


@dataclass(frozen=True, slots=True)
class Envelope:
    """Parsed IMAP ENVELOPE."""

    date: datetime | None = None
    subject: str | None = None
    sender: tuple[Sender, ...] = ()
    to: tuple[Sender, ...] = ()
    cc: tuple[Sender, ...] = ()
    bcc: tuple[Sender, ...] = ()
    in_reply_to: str | None = None
    message_id: str | None = None


@dataclass(slots=True)
class MessageSummary:
    """UID, flags, envelope and size for one listed message."""

    uid: int
    flags: tuple[str, ...]
    envelope: Envelope
    size: int | None = None
    internal_date: datetime | None = None

    @property
    def seen(self) -> bool:
        """Return whether ``\\Seen`` is set."""
        return _has_flag(self.flags, "\\Seen")

    @property
    def draft(self) -> bool:
        """Return whether ``\\Draft`` is set."""
        return _has_flag(self.flags, "\\Draft")


@dataclass(slots=True)
class FullMessage(MessageSummary):
    """A fetched message with decoded text bodies and attachment descriptors."""

    text_body: str | None = None
    html_body: str | None = None
    attachments: list[MimePart] = field(default_factory=list)


@dataclass(slots=True)
class MessagePage:
    """One page of message summaries plus the UID cursor for the next page."""

    messages: list[MessageSummary]
    next_page_token: str | None


@dataclass(slots=True)
class MimePart:
    """Node of an IMAP BODYSTRUCTURE tree."""

    part_id: str
    content_type: str
    params: dict[str, str] = field(default_factory=dict)
    encoding: str | None = None
    size: int | None = None
    disposition: str | None = None
    filename: str | None = None
    children: list[MimePart] = field(default_factory=list)

    @property
    def is_multipart(self) -> bool:
        return self.content_type.startswith("multipart/")

    @property
    def charset(self) -> str | None:
        return self.params.get("charset")

    @property
    def is_attachment(self) -> bool:
        """Explicit attachment disposition, or a named non-text leaf."""
        if self.is_multipart:
            return False
        if self.disposition == "attachment":
            return True
        return bool(self.filename) and self.content_type not in TEXT_BODY_TYPES

    def walk(self) -> Iterator[MimePart]:
        """Yield this part and its descendants depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def find(self, part_id: str) -> MimePart | None:
        """Return the descendant with ``part_id`` if present."""
        for part in self.walk():
            if part.part_id == part_id and not part.is_multipart:
                return part
        return None


class SessionState(Enum):
    """Lifecycle of a protocol session."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SELECTED = "selected"
    AUTHENTICATED = "authenticated"


def _has_flag(flags: tuple[str, ...], flag: str) -> bool:
    wanted = flag.lower()
    return any(candidate.lower() == wanted for candidate in flags)


__all__ = [
    "AttachmentDescriptor",
    "DraftResult",
    "EmailAlias",
    "Envelope",
    "FullMessage",
    "Label",
    "LabelCount",
    "LabelType",
    "MailSendOptions",
    "Mailbox",
    "MessagePage",
    "MessageSummary",
    "MimePart",
    "OutgoingAttachment",
    "OutgoingMessage",
    "ParsedDraft",
    "ParsedMessage",
    "SendResult",
    "Sender",
    "SessionState",
    "TEXT_BODY_TYPES",
    "ThreadList",
    "ThreadResponse",
    "ThreadStub",
    "UserInfo",
]
