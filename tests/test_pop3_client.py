"""Tests for the POP3 session service."""

# pylint: disable=protected-access

from __future__ import annotations

import poplib
from unittest.mock import MagicMock

import pytest
from pydantic import SecretStr

from mailbridge.core.config import Pop3Settings
from mailbridge.core.errors import (
    AuthenticationError,
    MailConnectionError,
    NotFoundError,
)
from mailbridge.core.models import SessionState
from mailbridge.transport import Pop3Session


@pytest.fixture
def connection(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    mock_connection = MagicMock()
    mock_connection.list.return_value = (
        b"+OK 3 messages",
        [b"1 120", b"2 340", b"3 560"],
        21,
    )
    monkeypatch.setattr(poplib, "POP3_SSL", MagicMock(return_value=mock_connection))
    return mock_connection


@pytest.fixture
def session() -> Pop3Session:
    return Pop3Session(
        Pop3Settings(host="pop.test"), "user@example.com", SecretStr("password")
    )


def test_first_call_connects_lazily(session: Pop3Session, connection: MagicMock) -> None:
    assert session.state is SessionState.DISCONNECTED

    assert session.list_messages() == [1, 2, 3]
    assert session.list_messages() == [1, 2, 3]

    connection.user.assert_called_once_with("user@example.com")
    connection.pass_.assert_called_once_with("password")
    assert session.state is SessionState.AUTHENTICATED


def test_fetch_message_joins_lines(session: Pop3Session, connection: MagicMock) -> None:
    connection.retr.return_value = (
        b"+OK",
        [b"Subject: hi", b"", b"body"],
        20,
    )

    assert session.fetch_message(2) == b"Subject: hi\r\n\r\nbody"
    connection.retr.assert_called_once_with(2)


def test_missing_message_raises_not_found(
    session: Pop3Session, connection: MagicMock
) -> None:
    connection.retr.side_effect = poplib.error_proto(b"-ERR no such message")

    with pytest.raises(NotFoundError):
        session.fetch_message(9)


def test_rejected_password_raises_authentication_error(
    session: Pop3Session, connection: MagicMock
) -> None:
    connection.pass_.side_effect = poplib.error_proto(b"-ERR invalid password")

    with pytest.raises(AuthenticationError):
        session.connect()

    assert session.state is SessionState.DISCONNECTED
    connection.close.assert_called_once()


def test_unreachable_server_raises_connection_error(
    session: Pop3Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(poplib, "POP3_SSL", MagicMock(side_effect=OSError("refused")))

    with pytest.raises(MailConnectionError):
        session.list_messages()


def test_quit_is_best_effort(session: Pop3Session, connection: MagicMock) -> None:
    session.connect()
    connection.quit.side_effect = poplib.error_proto(b"-ERR")

    session.quit()

    assert session.state is SessionState.DISCONNECTED
    assert not session._lock.locked()
