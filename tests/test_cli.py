"""Tests for the diagnostics CLI."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from pydantic import SecretStr

from mailbridge import cli
from mailbridge.core.config import (
    AppSettings,
    ConnectionCredentials,
    ImapSettings,
    SmtpSettings,
)
from mailbridge.core.errors import AuthenticationError


def _settings() -> AppSettings:
    return AppSettings(
        account=ConnectionCredentials(
            email="me@example.com",
            password=SecretStr("password"),
            imap=ImapSettings(host="imap.example.com"),
            smtp=SmtpSettings(host="smtp.example.com"),
        )
    )


def test_info_without_account(capsys: pytest.CaptureFixture[str]) -> None:
    args = cli.build_parser().parse_args([])

    assert cli.execute(args, AppSettings()) == 0
    assert "Configure an account" in capsys.readouterr().out


def test_info_lists_endpoints(capsys: pytest.CaptureFixture[str]) -> None:
    args = cli.build_parser().parse_args(["info"])

    assert cli.execute(args, _settings()) == 0
    output = capsys.readouterr().out
    assert "IMAP host: imap.example.com" in output
    assert "POP3 host: -" in output


def test_commands_require_account(capsys: pytest.CaptureFixture[str]) -> None:
    args = cli.build_parser().parse_args(["count"])

    assert cli.execute(args, AppSettings()) == 2
    assert "No account configured" in capsys.readouterr().out


def test_verify_reports_each_endpoint(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    imap_session = MagicMock()
    imap_session.__enter__.side_effect = AuthenticationError("IMAP login rejected")
    monkeypatch.setattr(cli, "ImapSession", MagicMock(return_value=imap_session))
    smtp_client = MagicMock()
    smtp_client.verify_connection.return_value = True
    monkeypatch.setattr(cli, "SmtpClient", MagicMock(return_value=smtp_client))
    args = cli.build_parser().parse_args(["verify"])

    assert cli.execute(args, _settings()) == 1
    output = capsys.readouterr().out
    assert "IMAP imap.example.com: IMAP login rejected" in output
    assert "SMTP smtp.example.com: ok" in output


def test_list_prints_ids_and_token(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    manager = MagicMock()
    manager.__enter__.return_value = manager
    manager.list_threads.return_value = MagicMock(
        threads=[MagicMock(id="INBOX:9"), MagicMock(id="INBOX:8")],
        next_page_token="8",
    )
    monkeypatch.setattr(cli, "GenericMailManager", MagicMock(return_value=manager))
    args = cli.build_parser().parse_args(["list", "--limit", "2"])

    assert cli.execute(args, _settings()) == 0
    manager.list_threads.assert_called_once_with("INBOX", max_results=2)
    assert capsys.readouterr().out.splitlines() == [
        "INBOX:9",
        "INBOX:8",
        "Next page token: 8",
    ]
