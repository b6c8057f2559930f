"""Parsers for the structured parts of IMAP server responses.

``imaplib`` hands back untagged response data as a list whose items are either
plain ``bytes`` lines or ``(prefix, literal)`` tuples, where ``prefix`` ends in
the ``{n}`` literal marker. The helpers here flatten that into one token
stream and rebuild the parenthesised structure that FETCH, LIST and STATUS
responses use, so ENVELOPE and BODYSTRUCTURE can be decoded without a
regex per field.

Token conventions: atoms become ``str``, quoted strings and literals become
``bytes``, ``NIL`` becomes ``None`` and parenthesised lists become ``list``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.utils import collapse_rfc2231_value, decode_rfc2231
from typing import Any

from ..core.datetime_utils import parse_header_date
from ..core.errors import ProtocolError
from ..core.models import Envelope, Mailbox, MimePart, Sender

_OPEN = object()
_CLOSE = object()
_LITERAL_MARKER = re.compile(rb"~?\{\d+\}\s*$")
_ATOM_STOP = frozenset(b' ()"\r\n')

ResponseData = Iterable[bytes | tuple[bytes, bytes] | None]


class ImapResponseError(ProtocolError):
    """Raised when a server response cannot be parsed."""


def _tokenize(line: bytes) -> Iterator[Any]:
    pos = 0
    size = len(line)
    while pos < size:
        char = line[pos]
        if char in b" \r\n":
            pos += 1
        elif char == ord("("):
            pos += 1
            yield _OPEN
        elif char == ord(")"):
            pos += 1
            yield _CLOSE
        elif char == ord('"'):
            pos += 1
            buffer = bytearray()
            while pos < size and line[pos] != ord('"'):
                if line[pos] == ord("\\") and pos + 1 < size:
                    pos += 1
                buffer.append(line[pos])
                pos += 1
            pos += 1
            yield bytes(buffer)
        else:
            start = pos
            depth = 0
            while pos < size:
                char = line[pos]
                if char == ord("["):
                    depth += 1
                elif char == ord("]"):
                    depth -= 1
                elif depth <= 0 and char in _ATOM_STOP:
                    break
                pos += 1
            atom = line[start:pos].decode("ascii", errors="replace")
            yield None if atom.upper() == "NIL" else atom


def _flatten(data: ResponseData) -> list[Any]:
    tokens: list[Any] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            head, literal = item[0], item[1]
            tokens.extend(_tokenize(_LITERAL_MARKER.sub(b"", head)))
            tokens.append(bytes(literal))
        else:
            tokens.extend(_tokenize(item))
    return tokens


def _read_list(tokens: list[Any], pos: int) -> tuple[list[Any], int]:
    items: list[Any] = []
    while pos < len(tokens):
        token = tokens[pos]
        if token is _CLOSE:
            return items, pos + 1
        if token is _OPEN:
            nested, pos = _read_list(tokens, pos + 1)
            items.append(nested)
            continue
        items.append(token)
        pos += 1
    raise ImapResponseError("Unterminated parenthesised list in IMAP response")


def parse_tokens(data: ResponseData) -> list[Any]:
    """Parse response data into a nested list structure."""
    tokens = _flatten(data)
    result: list[Any] = []
    pos = 0
    while pos < len(tokens):
        token = tokens[pos]
        if token is _OPEN:
            nested, pos = _read_list(tokens, pos + 1)
            result.append(nested)
        elif token is _CLOSE:
            raise ImapResponseError("Unbalanced ')' in IMAP response")
        else:
            result.append(token)
            pos += 1
    return result


def parse_fetch_response(data: ResponseData) -> list[dict[str, Any]]:
    """Split FETCH response data into one ``{ITEM: value}`` dict per message.

    Each dict also carries the message sequence number under ``"SEQ"``.
    """
    records: list[dict[str, Any]] = []
    structure = parse_tokens(data)
    index = 0
    while index < len(structure):
        token = structure[index]
        following = structure[index + 1] if index + 1 < len(structure) else None
        if isinstance(token, str) and token.isdigit() and isinstance(following, list):
            record: dict[str, Any] = {"SEQ": int(token)}
            for key, value in zip(following[0::2], following[1::2]):
                record[str(key).upper()] = value
            records.append(record)
            index += 2
        else:
            index += 1
    return records


def as_text(value: Any) -> str | None:
    """Decode a string token, applying RFC 2047 encoded-word decoding."""
    if value is None:
        return None
    if isinstance(value, bytes):
        text = value.decode("utf-8", errors="replace")
    else:
        text = str(value)
    if "=?" not in text:
        return text
    try:
        return str(make_header(decode_header(text)))
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        return text


def as_int(value: Any) -> int | None:
    """Return an integer token or ``None``."""
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="replace")
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _parse_addresses(value: Any) -> tuple[Sender, ...]:
    if not isinstance(value, list):
        return ()
    senders: list[Sender] = []
    for entry in value:
        if not isinstance(entry, list) or len(entry) < 4:
            continue
        name, _route, mailbox, host = entry[:4]
        # Group markers carry a NIL host.
        if host is None or mailbox is None:
            continue
        address = f"{as_text(mailbox)}@{as_text(host)}"
        senders.append(Sender(email=address, name=as_text(name) or ""))
    return tuple(senders)


def parse_envelope(value: Any) -> Envelope:
    """Decode an ENVELOPE list into an :class:`Envelope`."""
    if not isinstance(value, list):
        return Envelope()
    fields = (value + [None] * 10)[:10]
    date, subject, sender, _from_sender, _reply_to, to, cc, bcc, reply, msg_id = (
        fields
    )
    return Envelope(
        date=parse_header_date(as_text(date)),
        subject=as_text(subject),
        sender=_parse_addresses(sender),
        to=_parse_addresses(to),
        cc=_parse_addresses(cc),
        bcc=_parse_addresses(bcc),
        in_reply_to=as_text(reply),
        message_id=as_text(msg_id),
    )


def _parse_params(value: Any) -> dict[str, str]:
    if not isinstance(value, list):
        return {}
    params: dict[str, str] = {}
    for key, item in zip(value[0::2], value[1::2]):
        name = as_text(key)
        if name is None:
            continue
        params[name.lower()] = as_text(item) or ""
    return params


def _parse_disposition(value: Any) -> tuple[str | None, dict[str, str]]:
    if not isinstance(value, list) or not value:
        return None, {}
    kind = as_text(value[0])
    params = _parse_params(value[1]) if len(value) > 1 else {}
    return (kind.lower() if kind else None), params


def _resolve_filename(*sources: dict[str, str]) -> str | None:
    for params in sources:
        for key in ("filename", "name"):
            if params.get(key):
                return params[key]
            extended = params.get(f"{key}*")
            if extended:
                return str(collapse_rfc2231_value(decode_rfc2231(extended)))
    return None


def parse_body_structure(value: Any, part_id: str = "") -> MimePart:
    """Decode a BODYSTRUCTURE list into a :class:`MimePart` tree.

    Part identifiers follow IMAP section numbering: children of the root
    multipart are ``1``, ``2`` ...; nested parts are ``2.1`` and so on; a
    single-part message body is part ``1``.
    """
    if not isinstance(value, list) or not value:
        raise ImapResponseError("Empty BODYSTRUCTURE")

    if isinstance(value[0], list):
        children: list[MimePart] = []
        index = 0
        while index < len(value) and isinstance(value[index], list):
            child_id = f"{part_id}.{index + 1}" if part_id else str(index + 1)
            children.append(parse_body_structure(value[index], child_id))
            index += 1
        extension = value[index:]
        subtype = as_text(extension[0]) if extension else None
        params = _parse_params(extension[1]) if len(extension) > 1 else {}
        disposition, _ = (
            _parse_disposition(extension[2]) if len(extension) > 2 else (None, {})
        )
        return MimePart(
            part_id=part_id,
            content_type=f"multipart/{(subtype or 'mixed').lower()}",
            params=params,
            disposition=disposition,
            children=children,
        )

    fields = value + [None] * (7 - len(value)) if len(value) < 7 else value
    main_type = (as_text(fields[0]) or "application").lower()
    sub_type = (as_text(fields[1]) or "octet-stream").lower()
    content_type = f"{main_type}/{sub_type}"
    params = _parse_params(fields[2])
    encoding = as_text(fields[5])

    if main_type == "text":
        extension_start = 8
    elif content_type in ("message/rfc822", "message/global"):
        extension_start = 10
    else:
        extension_start = 7
    extension = fields[extension_start:]
    disposition, disposition_params = (
        _parse_disposition(extension[1]) if len(extension) > 1 else (None, {})
    )

    return MimePart(
        part_id=part_id or "1",
        content_type=content_type,
        params=params,
        encoding=encoding.lower() if encoding else None,
        size=as_int(fields[6]),
        disposition=disposition,
        filename=_resolve_filename(disposition_params, params),
    )


def parse_list_response(data: ResponseData) -> list[Mailbox]:
    """Decode LIST responses into :class:`Mailbox` records."""
    mailboxes: list[Mailbox] = []
    for item in data:
        if item is None:
            continue
        structure = parse_tokens([item])
        if len(structure) < 3 or not isinstance(structure[0], list):
            continue
        flags = tuple(str(flag) for flag in structure[0] if flag is not None)
        delimiter = as_text(structure[1])
        path = as_text(structure[2]) or ""
        name = path.rsplit(delimiter, 1)[-1] if delimiter else path
        mailboxes.append(
            Mailbox(path=path, name=name, delimiter=delimiter, flags=flags)
        )
    return mailboxes


def parse_status_response(data: ResponseData) -> dict[str, int]:
    """Decode a STATUS response into ``{"MESSAGES": n, ...}``."""
    for item in data:
        if item is None:
            continue
        structure = parse_tokens([item])
        for entry in structure:
            if isinstance(entry, list):
                return {
                    str(key).upper(): as_int(count) or 0
                    for key, count in zip(entry[0::2], entry[1::2])
                }
    return {}


def quote_mailbox(path: str) -> str:
    """Quote a mailbox name for use as a command argument."""
    if path.upper() == "INBOX":
        return "INBOX"
    escaped = path.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


__all__ = [
    "ImapResponseError",
    "as_int",
    "as_text",
    "parse_body_structure",
    "parse_envelope",
    "parse_fetch_response",
    "parse_list_response",
    "parse_status_response",
    "parse_tokens",
    "quote_mailbox",
]
