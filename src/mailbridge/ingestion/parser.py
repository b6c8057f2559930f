"""Turn raw RFC 822 downloads (POP3 RETR) into :class:`ParsedMessage` views."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses

from ..core.datetime_utils import parse_header_date, utcnow
from ..core.models import AttachmentDescriptor, ParsedMessage, Sender

LOGGER = logging.getLogger(__name__)

_BODY_SEPARATORS = {"text/plain": "\n\n", "text/html": "\n"}


class EmailParser:
    """Parse whole messages; attachments are numbered from 1 in MIME order."""

    def __init__(self) -> None:
        self._parser = BytesParser(policy=policy.default)

    def parse(self, message_id: str, payload: bytes, mailbox: str) -> ParsedMessage:
        """Parse raw RFC822 bytes into a :class:`ParsedMessage`.

        Raw downloads carry no server-side state, so the result is marked
        read and unlabelled. A missing or unparsable ``Date`` falls back to
        the current time.
        """
        message = self._load(payload)
        sent_on = parse_header_date(_header(message, "Date")) or utcnow()
        senders = _addresses(message, "From")
        bodies = _text_bodies(message)

        return ParsedMessage(
            id=message_id,
            thread_id=message_id,
            mailbox=mailbox,
            subject=_header(message, "Subject") or "",
            sender=senders[0] if senders else None,
            to=_addresses(message, "To"),
            cc=_addresses(message, "Cc"),
            bcc=_addresses(message, "Bcc"),
            body_plain=bodies["text/plain"],
            body_html=bodies["text/html"],
            received_on=sent_on,
            sent_on=sent_on,
            read=True,
            labels=[],
            attachments=[
                AttachmentDescriptor(
                    id=str(index),
                    name=part.get_filename() or f"attachment-{index}",
                    content_type=part.get_content_type(),
                    size=len(content) or None,
                )
                for index, part, content in _attachments(message)
            ],
            message_id=_header(message, "Message-ID"),
        )

    def extract_attachment(self, payload: bytes, attachment_id: str) -> bytes | None:
        """Return the decoded bytes of attachment number ``attachment_id``."""
        if not attachment_id.isdigit():
            return None
        wanted = int(attachment_id)
        for index, _, content in _attachments(self._load(payload)):
            if index == wanted:
                return content
        return None

    def _load(self, payload: bytes) -> EmailMessage:
        message = self._parser.parsebytes(payload)
        if message.defects:
            LOGGER.debug("Parsed message with defects: %s", message.defects)
        return message  # type: ignore[return-value]


def _header(message: EmailMessage, name: str) -> str | None:
    value = message.get(name)
    return None if value is None else str(value)


def _addresses(message: EmailMessage, name: str) -> list[Sender]:
    raw_values = [str(value) for value in message.get_all(name, [])]
    return [
        Sender(email=address, name=display_name)
        for display_name, address in getaddresses(raw_values)
        if address
    ]


def _text_bodies(message: EmailMessage) -> dict[str, str | None]:
    """Join every inline text part per type; empty types map to ``None``."""
    found: dict[str, list[str]] = {content_type: [] for content_type in _BODY_SEPARATORS}
    for part in message.walk():
        content_type = part.get_content_type()
        if (
            part.is_multipart()
            or content_type not in found
            or part.get_content_disposition() == "attachment"
        ):
            continue
        try:
            content = part.get_content()
        except LookupError:
            LOGGER.debug("Skipping %s part with unknown charset", content_type)
            continue
        if isinstance(content, str) and content.strip():
            found[content_type].append(content.strip())

    return {
        content_type: _BODY_SEPARATORS[content_type].join(chunks) if chunks else None
        for content_type, chunks in found.items()
    }


def _attachments(message: EmailMessage) -> Iterator[tuple[int, EmailMessage, bytes]]:
    for index, part in enumerate(message.iter_attachments(), start=1):
        yield index, part, part.get_payload(decode=True) or b""


__all__ = ["EmailParser"]
