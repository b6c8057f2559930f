"""POP3 session used as a read-only inbox transport."""

from __future__ import annotations

import logging
import poplib
import ssl
import threading
from types import TracebackType

from pydantic import SecretStr

from ..core.config import Pop3Settings
from ..core.errors import (
    AuthenticationError,
    MailConnectionError,
    NotFoundError,
    ProtocolError,
)
from ..core.models import SessionState

LOGGER = logging.getLogger(__name__)

Pop3Connection = poplib.POP3 | poplib.POP3_SSL


class Pop3Error(ProtocolError):
    """Raised when the POP3 server answers ``-ERR``."""


class Pop3Session:
    """Lazily connected POP3 session; every call holds the session lock."""

    def __init__(
        self,
        settings: Pop3Settings,
        username: str,
        password: SecretStr,
        *,
        timeout: float = 30.0,
    ) -> None:
        self._settings = settings
        self._username = username
        self._password = password
        self._timeout = timeout
        self._connection: Pop3Connection | None = None
        self._lock = threading.Lock()

    def __enter__(self) -> Pop3Session:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.quit()

    @property
    def state(self) -> SessionState:
        if self._connection is None:
            return SessionState.DISCONNECTED
        return SessionState.AUTHENTICATED

    def connect(self) -> None:
        """Open and authenticate the session if it is not already."""
        with self._lock:
            self._ensure_connected()

    def list_messages(self) -> list[int]:
        """Return the message numbers currently in the maildrop."""
        with self._lock:
            connection = self._ensure_connected()
            try:
                _, listings, _ = connection.list()
            except poplib.error_proto as exc:
                raise Pop3Error(
                    f"POP3 LIST failed: {exc}", operation="list_messages"
                ) from exc
            except OSError as exc:
                self._connection = None
                raise MailConnectionError(
                    f"Network error during POP3 LIST: {exc}", operation="list_messages"
                ) from exc

        numbers: list[int] = []
        for listing in listings:
            token = listing.split(maxsplit=1)[0] if listing else b""
            if token.isdigit():
                numbers.append(int(token))
        LOGGER.debug("POP3 maildrop holds %d messages", len(numbers))
        return numbers

    def fetch_message(self, seq: int) -> bytes:
        """Return the raw RFC 5322 bytes of message ``seq``.

        Raises:
            NotFoundError: If the server reports no such message
        """
        with self._lock:
            connection = self._ensure_connected()
            try:
                _, lines, octets = connection.retr(seq)
            except poplib.error_proto as exc:
                raise NotFoundError(
                    f"POP3 message {seq} not retrievable: {exc}",
                    operation="fetch_message",
                    uid=seq,
                ) from exc
            except OSError as exc:
                self._connection = None
                raise MailConnectionError(
                    f"Network error during POP3 RETR: {exc}",
                    operation="fetch_message",
                    uid=seq,
                ) from exc
        LOGGER.debug("Retrieved POP3 message %s (%s octets)", seq, octets)
        return b"\r\n".join(lines)

    def quit(self) -> None:
        """Close the session; failures are logged, never raised."""
        with self._lock:
            connection = self._connection
            self._connection = None
            if connection is None:
                return
            try:
                connection.quit()
                LOGGER.info("POP3 disconnected from %s", self._settings.host)
            except (poplib.error_proto, OSError) as exc:
                LOGGER.warning("POP3 QUIT to %s failed: %s", self._settings.host, exc)
                connection.close()

    def _ensure_connected(self) -> Pop3Connection:
        if self._connection is not None:
            return self._connection

        host, port = self._settings.host, self._settings.port
        try:
            if self._settings.tls:
                LOGGER.debug("Connecting to POP3 host %s:%s via TLS", host, port)
                connection: Pop3Connection = poplib.POP3_SSL(
                    host, port, timeout=self._timeout, context=ssl.create_default_context()
                )
            else:
                LOGGER.debug("Connecting to POP3 host %s:%s", host, port)
                connection = poplib.POP3(host, port, timeout=self._timeout)
        except (poplib.error_proto, OSError) as exc:
            LOGGER.error("POP3 connection error to %s: %s", host, exc)
            raise MailConnectionError(
                f"Failed to connect to POP3 server {host}:{port}: {exc}",
                operation="connect",
            ) from exc

        try:
            connection.user(self._username)
            connection.pass_(self._password.get_secret_value())
        except poplib.error_proto as exc:
            connection.close()
            raise AuthenticationError(
                f"POP3 login rejected for {self._username}", operation="login"
            ) from exc
        except OSError as exc:
            connection.close()
            raise MailConnectionError(
                f"Network error during POP3 login: {exc}", operation="login"
            ) from exc

        LOGGER.info("POP3 connected to %s:%s", host, port)
        self._connection = connection
        return connection


__all__ = ["Pop3Error", "Pop3Session"]
