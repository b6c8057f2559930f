"""IMAP session service providing mailbox-scoped primitives over ``imaplib``."""

from __future__ import annotations

import base64
import binascii
import imaplib
import io
import logging
import quopri
import re
import ssl
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from types import TracebackType
from typing import Any, BinaryIO

from pydantic import SecretStr

from ..core.config import ImapSettings
from ..core.datetime_utils import parse_internal_date
from ..core.errors import (
    AuthenticationError,
    MailConnectionError,
    NotFoundError,
    ProtocolError,
)
from ..core.models import (
    FullMessage,
    Mailbox,
    MessagePage,
    MessageSummary,
    MimePart,
    SessionState,
)
from .imap_response import (
    as_int,
    as_text,
    parse_body_structure,
    parse_envelope,
    parse_fetch_response,
    parse_list_response,
    parse_status_response,
    quote_mailbox,
)

LOGGER = logging.getLogger(__name__)

SUMMARY_ITEMS = "(UID FLAGS ENVELOPE RFC822.SIZE INTERNALDATE)"
MESSAGE_ITEMS = "(UID FLAGS ENVELOPE RFC822.SIZE INTERNALDATE BODYSTRUCTURE)"
DEFAULT_PAGE_SIZE = 100

_APPENDUID = re.compile(rb"\[APPENDUID \d+ (\d+)\]", re.IGNORECASE)

ImapConnection = imaplib.IMAP4 | imaplib.IMAP4_SSL


class ImapError(ProtocolError):
    """Wrap IMAP command rejections with additional context."""


class ImapSession:
    """One authenticated IMAP connection plus its mailbox lock.

    Every mailbox-scoped call acquires the session lock, SELECTs the mailbox,
    runs its exchange and releases the lock on every exit path. Only one
    mailbox can be selected on a connection, so the lock is what keeps two
    callers from interleaving selections.
    """

    def __init__(
        self,
        settings: ImapSettings,
        username: str,
        password: SecretStr,
        *,
        timeout: float | None = 30.0,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        """Initialise the session; nothing touches the network until first use."""
        self._settings = settings
        self._username = username
        self._password = password
        self._timeout = timeout
        self._default_page_size = default_page_size
        self._connection: ImapConnection | None = None
        self._selected: str | None = None
        self._lock = threading.Lock()
        self._connect_lock = threading.Lock()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapSession:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.disconnect()

    # State --------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        """Return the current session state."""
        if not self._usable():
            return SessionState.DISCONNECTED
        if self._selected is not None:
            return SessionState.SELECTED
        return SessionState.CONNECTED

    @property
    def selected_mailbox(self) -> str | None:
        return self._selected if self._usable() else None

    @property
    def mailbox_locked(self) -> bool:
        """Return whether an operation currently holds the mailbox lock."""
        return self._lock.locked()

    # Connection lifecycle -------------------------------------------------------
    def connect(self) -> None:
        """Open and authenticate the connection unless it is already usable."""
        with self._connect_lock:
            if self._usable():
                LOGGER.debug("IMAP session to %s already usable", self._settings.host)
                return

            connection = self._open()
            try:
                LOGGER.debug("Authenticating to IMAP as %s", self._username)
                connection.login(self._username, self._password.get_secret_value())
            except imaplib.IMAP4.abort as exc:
                _shutdown_quietly(connection)
                raise MailConnectionError(
                    f"IMAP connection dropped during login: {exc}", operation="login"
                ) from exc
            except imaplib.IMAP4.error as exc:
                _shutdown_quietly(connection)
                raise AuthenticationError(
                    f"IMAP login rejected for {self._username}", operation="login"
                ) from exc
            except OSError as exc:
                _shutdown_quietly(connection)
                raise MailConnectionError(
                    f"Network error during IMAP login: {exc}", operation="login"
                ) from exc

            self._connection = connection
            self._selected = None
            LOGGER.info(
                "IMAP connected to %s:%s", self._settings.host, self._settings.port
            )

    def ensure_connected(self) -> ImapConnection:
        """Reconnect transparently if the session was never opened or logged out."""
        if not self._usable():
            LOGGER.debug("IMAP session not usable; connecting")
            self._connection = None
            self._selected = None
            self.connect()
        connection = self._connection
        if connection is None:
            raise MailConnectionError(
                "IMAP connection has not been established", operation="connect"
            )
        return connection

    def disconnect(self) -> None:
        """Log out; errors are logged and suppressed."""
        with self._connect_lock:
            connection = self._connection
            self._connection = None
            self._selected = None
            if connection is None:
                return
            try:
                connection.logout()
                LOGGER.info("IMAP disconnected from %s", self._settings.host)
            except (imaplib.IMAP4.error, OSError) as exc:
                LOGGER.warning(
                    "IMAP logout from %s failed: %s", self._settings.host, exc
                )

    # Public API ---------------------------------------------------------------
    def list_mailboxes(self) -> list[Mailbox]:
        """Return every folder visible to the account."""
        with self._locked("list_mailboxes") as (connection, _):
            status, data = connection.list()
            _check(status, data, "LIST failed", operation="list_mailboxes")
            return parse_list_response(data)

    def status(self, mailbox: str) -> dict[str, int]:
        """Return ``{"messages": n, "unseen": n}`` via STATUS."""
        with self._locked("status") as (connection, _):
            status, data = connection.status(
                quote_mailbox(mailbox), "(MESSAGES UNSEEN)"
            )
            _check(status, data, "STATUS failed", operation="status", mailbox=mailbox)
            values = parse_status_response(data)
            return {
                "messages": values.get("MESSAGES", 0),
                "unseen": values.get("UNSEEN", 0),
            }

    def list_messages(
        self,
        mailbox: str,
        start_seq: int | None = None,
        page_size: int | None = None,
        *,
        before_uid: int | None = None,
    ) -> MessagePage:
        """List summaries for a page of messages in ``mailbox``.

        Without a cursor the page is a sequence range: ``start_seq`` onwards
        when given, the newest ``page_size`` messages when only a size is
        given, else the first ``default_page_size`` messages. With
        ``before_uid`` the page is the newest ``page_size`` messages whose
        UID is below the cursor, found with ``UID SEARCH`` so UID gaps are
        honoured. The returned token is the lowest UID of a full page.
        """
        with self._locked("list_messages", mailbox) as (connection, exists):
            if before_uid is not None:
                records = self._list_before(connection, before_uid, page_size)
            else:
                fetch_range = self._sequence_range(exists, start_seq, page_size)
                records = (
                    self._fetch_summaries(connection, fetch_range, by_uid=False)
                    if fetch_range
                    else []
                )

        records.sort(key=lambda record: record.uid)
        next_page_token = None
        if page_size and records and len(records) >= page_size:
            next_page_token = str(records[0].uid)
        return MessagePage(messages=records, next_page_token=next_page_token)

    def fetch_message(self, mailbox: str, uid: str | int) -> FullMessage | None:
        """Fetch envelope, flags and text bodies; attachments stay lazy."""
        uid_text = _require_uid(uid, mailbox)
        with self._locked("fetch_message", mailbox, uid=uid_text) as (connection, _):
            status, data = connection.uid("FETCH", uid_text, MESSAGE_ITEMS)
            _check(status, data, "FETCH failed", operation="fetch_message",
                   mailbox=mailbox, uid=uid_text)
            record = _record_for_uid(parse_fetch_response(data), uid_text)
            if record is None:
                return None

            summary = _summary_from_record(record)
            text_body: str | None = None
            html_body: str | None = None
            attachments: list[MimePart] = []
            structure = record.get("BODYSTRUCTURE")
            if isinstance(structure, list):
                text_part, html_part, attachments = classify_parts(
                    parse_body_structure(structure)
                )
                if text_part is not None:
                    text_body = self._download_text(connection, uid_text, text_part)
                if html_part is not None:
                    html_body = self._download_text(connection, uid_text, html_part)

        return FullMessage(
            uid=summary.uid,
            flags=summary.flags,
            envelope=summary.envelope,
            size=summary.size,
            internal_date=summary.internal_date,
            text_body=text_body,
            html_body=html_body,
            attachments=attachments,
        )

    def download_attachment(
        self, mailbox: str, uid: str | int, part_id: str
    ) -> BinaryIO | None:
        """Return the decoded bytes of one body part, or ``None`` if absent."""
        uid_text = _require_uid(uid, mailbox)
        with self._locked("download_attachment", mailbox, uid=uid_text) as (
            connection,
            _,
        ):
            status, data = connection.uid("FETCH", uid_text, "(UID BODYSTRUCTURE)")
            _check(status, data, "FETCH failed", operation="download_attachment",
                   mailbox=mailbox, uid=uid_text)
            record = _record_for_uid(parse_fetch_response(data), uid_text)
            structure = record.get("BODYSTRUCTURE") if record else None
            if not isinstance(structure, list):
                return None
            part = parse_body_structure(structure).find(part_id)
            if part is None:
                return None
            payload = self._download_section(connection, uid_text, part_id)
        if payload is None:
            return None
        return io.BytesIO(decode_transfer_encoding(payload, part.encoding))

    def set_flags(self, mailbox: str, uids: str, flags: Sequence[str]) -> None:
        """Add ``flags`` to the messages in ``uids`` (a UID or UID set)."""
        self._store(mailbox, uids, "+FLAGS.SILENT", flags, operation="set_flags")

    def unset_flags(self, mailbox: str, uids: str, flags: Sequence[str]) -> None:
        """Remove ``flags`` from the messages in ``uids``."""
        self._store(mailbox, uids, "-FLAGS.SILENT", flags, operation="unset_flags")

    def move_message(self, mailbox: str, uid: str, destination: str) -> None:
        """Move messages by UID; server rejections surface with their text."""
        with self._locked("move_message", mailbox, uid=uid) as (connection, _):
            target = quote_mailbox(destination)
            if "MOVE" in connection.capabilities:
                LOGGER.debug("Moving UID %s from %s to %s", uid, mailbox, destination)
                status, data = connection.uid("MOVE", uid, target)
                _check(status, data, f"MOVE to '{destination}' failed",
                       operation="move_message", mailbox=mailbox, uid=uid)
                return

            LOGGER.debug("Server lacks MOVE; copying UID %s to %s", uid, destination)
            status, data = connection.uid("COPY", uid, target)
            _check(status, data, f"COPY to '{destination}' failed",
                   operation="move_message", mailbox=mailbox, uid=uid)
            status, data = connection.uid("STORE", uid, "+FLAGS.SILENT", r"(\Deleted)")
            _check(status, data, "STORE \\Deleted failed",
                   operation="move_message", mailbox=mailbox, uid=uid)
            if "UIDPLUS" in connection.capabilities:
                status, data = connection.uid("EXPUNGE", uid)
                _check(status, data, "UID EXPUNGE failed",
                       operation="move_message", mailbox=mailbox, uid=uid)

    def append(
        self, mailbox: str, raw_message: bytes, flags: Sequence[str] = ()
    ) -> str | None:
        """Append a message and return its UID when the server reports it."""
        with self._locked("append") as (connection, _):
            flag_list = f"({' '.join(flags)})" if flags else None
            status, data = connection.append(
                quote_mailbox(mailbox), flag_list, None, raw_message
            )
            _check(status, data, "APPEND failed", operation="append", mailbox=mailbox)
            for line in data or []:
                if isinstance(line, bytes):
                    match = _APPENDUID.search(line)
                    if match:
                        return match.group(1).decode("ascii")
        return None

    def search_header(self, mailbox: str, header: str, value: str) -> list[int]:
        """Return UIDs in ``mailbox`` whose ``header`` contains ``value``."""
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        with self._locked("search_header", mailbox) as (connection, _):
            return _search_uids(connection, "HEADER", header, f'"{escaped}"')

    # Internal helpers ---------------------------------------------------------
    def _usable(self) -> bool:
        connection = self._connection
        return connection is not None and getattr(connection, "state", None) != "LOGOUT"

    def _open(self) -> ImapConnection:
        host, port = self._settings.host, self._settings.port
        context = ssl.create_default_context()
        connection: ImapConnection | None = None
        try:
            if self._settings.secure:
                LOGGER.debug("Connecting to IMAP host %s:%s via TLS", host, port)
                return imaplib.IMAP4_SSL(
                    host, port, ssl_context=context, timeout=self._timeout
                )
            LOGGER.debug("Connecting to IMAP host %s:%s without TLS", host, port)
            connection = imaplib.IMAP4(host, port, timeout=self._timeout)
            if "STARTTLS" in connection.capabilities:
                LOGGER.debug("Upgrading IMAP connection with STARTTLS")
                connection.starttls(ssl_context=context)
            elif self._settings.require_tls:
                raise MailConnectionError(
                    f"IMAP server {host} does not offer STARTTLS", operation="connect"
                )
            return connection
        except MailConnectionError:
            if connection is not None:
                _shutdown_quietly(connection)
            raise
        except (imaplib.IMAP4.error, OSError) as exc:
            if connection is not None:
                _shutdown_quietly(connection)
            LOGGER.error("IMAP connection error to %s: %s", host, exc)
            raise MailConnectionError(
                f"Failed to connect to IMAP server {host}:{port}: {exc}",
                operation="connect",
            ) from exc

    def _drop_connection(self) -> None:
        connection = self._connection
        self._connection = None
        self._selected = None
        if connection is not None:
            _shutdown_quietly(connection)

    @contextmanager
    def _locked(
        self,
        operation: str,
        mailbox: str | None = None,
        *,
        uid: str | None = None,
    ) -> Iterator[tuple[ImapConnection, int]]:
        """Hold the session lock, optionally SELECTing ``mailbox`` first.

        Yields the connection and the mailbox's EXISTS count (0 when nothing
        is selected). Library errors are wrapped with the call context.
        """
        with self._lock:
            try:
                connection = self.ensure_connected()
                exists = 0
                if mailbox is not None:
                    exists = self._select(connection, mailbox, operation)
                yield connection, exists
            except imaplib.IMAP4.abort as exc:
                self._drop_connection()
                raise MailConnectionError(
                    f"IMAP connection lost: {exc}",
                    operation=operation, mailbox=mailbox, uid=uid,
                ) from exc
            except imaplib.IMAP4.error as exc:
                raise ImapError(
                    f"IMAP command failed: {exc}",
                    operation=operation, mailbox=mailbox, uid=uid,
                ) from exc
            except OSError as exc:
                self._drop_connection()
                raise MailConnectionError(
                    f"Network error talking to IMAP server: {exc}",
                    operation=operation, mailbox=mailbox, uid=uid,
                ) from exc

    def _select(self, connection: ImapConnection, mailbox: str, operation: str) -> int:
        status, data = connection.select(quote_mailbox(mailbox))
        if status != "OK":
            self._selected = None
            raise NotFoundError(
                f"Mailbox '{mailbox}' cannot be selected: {_detail(data)}",
                operation=operation, mailbox=mailbox,
            )
        self._selected = mailbox
        return as_int(data[0]) or 0 if data else 0

    def _sequence_range(
        self, exists: int, start_seq: int | None, page_size: int | None
    ) -> str | None:
        if exists <= 0:
            return None
        if start_seq is not None:
            first = max(1, start_seq)
            last = min(exists, first + (page_size or self._default_page_size) - 1)
        elif page_size:
            first = max(1, exists - page_size + 1)
            last = exists
        else:
            first = 1
            last = min(exists, self._default_page_size)
        if first > last:
            return None
        return f"{first}:{last}"

    def _list_before(
        self, connection: ImapConnection, before_uid: int, page_size: int | None
    ) -> list[MessageSummary]:
        if before_uid <= 1:
            return []
        candidates = [
            uid
            for uid in _search_uids(connection, "UID", f"1:{before_uid - 1}")
            if uid < before_uid
        ]
        window = sorted(candidates)[-(page_size or self._default_page_size):]
        if not window:
            return []
        uid_set = ",".join(str(uid) for uid in window)
        return self._fetch_summaries(connection, uid_set, by_uid=True)

    def _fetch_summaries(
        self, connection: ImapConnection, message_set: str, *, by_uid: bool
    ) -> list[MessageSummary]:
        LOGGER.debug("Fetching summaries for %s (uid=%s)", message_set, by_uid)
        if by_uid:
            status, data = connection.uid("FETCH", message_set, SUMMARY_ITEMS)
        else:
            status, data = connection.fetch(message_set, SUMMARY_ITEMS)
        _check(status, data, "FETCH failed", operation="list_messages")
        return [
            _summary_from_record(record)
            for record in parse_fetch_response(data)
            if as_int(record.get("UID")) is not None
        ]

    def _download_section(
        self, connection: ImapConnection, uid: str, part_id: str
    ) -> bytes | None:
        status, data = connection.uid("FETCH", uid, f"(BODY.PEEK[{part_id}])")
        _check(status, data, f"FETCH of part {part_id} failed",
               operation="download", uid=uid)
        for record in parse_fetch_response(data):
            for key, value in record.items():
                if key.startswith("BODY[") and isinstance(value, bytes):
                    return value
        return None

    def _download_text(
        self, connection: ImapConnection, uid: str, part: MimePart
    ) -> str | None:
        payload = self._download_section(connection, uid, part.part_id)
        if payload is None:
            return None
        decoded = decode_transfer_encoding(payload, part.encoding)
        charset = part.charset or "utf-8"
        try:
            return decoded.decode(charset, errors="replace")
        except LookupError:
            LOGGER.debug("Unknown charset %s on part %s", charset, part.part_id)
            return decoded.decode("utf-8", errors="replace")

    def _store(
        self,
        mailbox: str,
        uids: str,
        command: str,
        flags: Sequence[str],
        *,
        operation: str,
    ) -> None:
        flag_list = f"({' '.join(flags)})"
        with self._locked(operation, mailbox, uid=uids) as (connection, _):
            LOGGER.debug("STORE %s %s %s in %s", uids, command, flag_list, mailbox)
            status, data = connection.uid("STORE", uids, command, flag_list)
            _check(status, data, f"STORE {command} failed",
                   operation=operation, mailbox=mailbox, uid=uids)


def classify_parts(
    root: MimePart,
) -> tuple[MimePart | None, MimePart | None, list[MimePart]]:
    """Pick the first plain and HTML body parts and collect attachment parts."""
    text_part: MimePart | None = None
    html_part: MimePart | None = None
    attachments: list[MimePart] = []
    for part in root.walk():
        if part.is_multipart:
            continue
        if part.is_attachment:
            attachments.append(part)
        elif part.content_type == "text/plain" and text_part is None:
            text_part = part
        elif part.content_type == "text/html" and html_part is None:
            html_part = part
    return text_part, html_part, attachments


def decode_transfer_encoding(payload: bytes, encoding: str | None) -> bytes:
    """Undo base64 / quoted-printable content transfer encoding."""
    if encoding == "base64":
        try:
            return base64.b64decode(payload)
        except binascii.Error:
            LOGGER.warning("Malformed base64 body part; returning raw bytes")
            return payload
    if encoding == "quoted-printable":
        return quopri.decodestring(payload)
    return payload


def _check(status: str, data: Any, message: str, **context: Any) -> None:
    if status != "OK":
        raise ImapError(f"{message}: {_detail(data)}", **context)


def _detail(data: Any) -> str:
    if not data:
        return "no response text"
    parts: list[str] = []
    for item in data:
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="replace"))
        elif item is not None:
            parts.append(str(item))
    return " ".join(parts) or "no response text"


def _search_uids(connection: ImapConnection, *criteria: str) -> list[int]:
    status, data = connection.uid("SEARCH", None, *criteria)
    _check(status, data, "SEARCH failed", operation="search")
    raw_ids = data[0].split() if data and data[0] else []
    return [int(raw) for raw in raw_ids if raw.isdigit()]


def _record_for_uid(
    records: Iterable[dict[str, Any]], uid: str
) -> dict[str, Any] | None:
    wanted = int(uid)
    for record in records:
        if as_int(record.get("UID")) == wanted:
            return record
    return None


def _summary_from_record(record: dict[str, Any]) -> MessageSummary:
    raw_flags = record.get("FLAGS")
    flags = tuple(str(flag) for flag in raw_flags if flag) if isinstance(raw_flags, list) else ()
    return MessageSummary(
        uid=as_int(record.get("UID")) or 0,
        flags=flags,
        envelope=parse_envelope(record.get("ENVELOPE")),
        size=as_int(record.get("RFC822.SIZE")),
        internal_date=parse_internal_date(as_text(record.get("INTERNALDATE"))),
    )


def _require_uid(uid: str | int, mailbox: str) -> str:
    text = str(uid).strip()
    if not text.isdigit():
        raise NotFoundError(f"Invalid message UID '{uid}'", mailbox=mailbox, uid=text)
    return text


def _shutdown_quietly(connection: ImapConnection) -> None:
    try:
        connection.shutdown()
    except (imaplib.IMAP4.error, OSError) as exc:
        LOGGER.debug("IMAP socket shutdown raised; ignoring: %s", exc)


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "ImapError",
    "ImapSession",
    "classify_parts",
    "decode_transfer_encoding",
]
