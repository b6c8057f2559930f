"""Command-line entry point for diagnosing a configured mail account."""

from __future__ import annotations

import argparse
from pathlib import Path

from mailbridge.core import (
    AppSettings,
    ConnectionCredentials,
    MailError,
    configure_logging,
    load_app_settings,
)
from mailbridge.drivers import GenericMailManager
from mailbridge.transport import ImapSession, Pop3Session, SmtpClient


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Mailbridge account diagnostics")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=["info", "verify", "labels", "list", "count"],
        help="Operation to execute.",
    )
    parser.add_argument(
        "--folder",
        default=None,
        help="Folder for the list command (default: the configured inbox).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Number of messages for the list command (default: 20).",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit status."""
    command = args.command
    if command == "info":
        _print_info(settings)
        return 0
    if settings.account is None:
        print("No account configured. Set MAILBRIDGE_ACCOUNT__EMAIL and friends.")
        return 2
    try:
        if command == "verify":
            return _run_verify(settings.account, settings.mail.timeout_seconds)
        with GenericMailManager(settings.account, settings.mail) as manager:
            if command == "labels":
                for label in manager.get_user_labels():
                    print(f"{label.type:<7} {label.id:<30} {label.name}")
            elif command == "list":
                folder = args.folder or settings.mail.inbox_folder
                page = manager.list_threads(folder, max_results=args.limit)
                for thread in page.threads:
                    print(thread.id)
                if page.next_page_token:
                    print(f"Next page token: {page.next_page_token}")
            elif command == "count":
                for entry in manager.count():
                    count_text = "?" if entry.count is None else str(entry.count)
                    print(f"{count_text:>8}  {entry.label}")
    except MailError as exc:
        print(f"{command} failed: {exc}")
        return 1
    return 0


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


def _print_info(settings: AppSettings) -> None:
    account = settings.account
    if account is None:
        print("Mailbridge is ready. Configure an account to get started.")
        return
    print(f"Account: {account.email}")
    print(f"IMAP host: {account.imap.host if account.imap else '-'}")
    print(f"SMTP host: {account.smtp.host if account.smtp else '-'}")
    print(f"POP3 host: {account.pop3.host if account.pop3 else '-'}")


def _run_verify(account: ConnectionCredentials, timeout: float) -> int:
    """Log in to every configured endpoint and report each outcome."""
    failures = 0

    if account.imap is not None:
        try:
            with ImapSession(account.imap, account.email, account.password, timeout=timeout):
                print(f"IMAP {account.imap.host}: ok")
        except MailError as exc:
            failures += 1
            print(f"IMAP {account.imap.host}: {exc}")

    if account.smtp is not None:
        client = SmtpClient(account.smtp, account.email, account.password, timeout=timeout)
        smtp_ok = client.verify_connection()
        failures += 0 if smtp_ok else 1
        print(f"SMTP {account.smtp.host}: {'ok' if smtp_ok else 'failed'}")

    if account.pop3 is not None:
        try:
            with Pop3Session(account.pop3, account.email, account.password, timeout=timeout):
                print(f"POP3 {account.pop3.host}: ok")
        except MailError as exc:
            failures += 1
            print(f"POP3 {account.pop3.host}: {exc}")

    return 1 if failures else 0


if __name__ == "__main__":
    main()
