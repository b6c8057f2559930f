"""Tests for the generic IMAP/SMTP/POP3 mail manager."""

from __future__ import annotations

import base64
import io
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email import message_from_bytes
from email.utils import getaddresses

import pytest
from pydantic import SecretStr

from mailbridge.core.config import (
    ConnectionCredentials,
    ImapSettings,
    Pop3Settings,
    SmtpSettings,
)
from mailbridge.core.errors import (
    NotFoundError,
    PartialFailureError,
    UnsupportedOperationError,
)
from mailbridge.core.interfaces import Capability
from mailbridge.core.models import (
    Envelope,
    FullMessage,
    LabelCount,
    Mailbox,
    MailSendOptions,
    MessagePage,
    MessageSummary,
    MimePart,
    OutgoingMessage,
    SendResult,
    Sender,
)
from mailbridge.drivers import GenericMailManager
from mailbridge.transport import ImapError

FIXED_DATE = datetime(2024, 7, 2, 10, 0, tzinfo=UTC)


@dataclass
class StoredMessage:
    envelope: Envelope
    flags: set[str] = field(default_factory=set)
    text_body: str | None = None
    html_body: str | None = None
    attachments: list[MimePart] = field(default_factory=list)
    blobs: dict[str, bytes] = field(default_factory=dict)


class FakeImapSession:
    """In-memory stand-in honouring the session's UID semantics."""

    def __init__(self) -> None:
        self.mailboxes: dict[str, dict[int, StoredMessage]] = {
            "INBOX": {},
            "Archive": {},
            "Drafts": {},
            "Trash": {},
        }
        self.next_uid = 1
        self.fail_moves = False
        self.fail_status: set[str] = set()
        self.fail_append = False
        self.report_append_uid = True
        self.disconnected = False

    def add(self, mailbox: str, subject: str, flags: Sequence[str] = (), **extra) -> int:
        uid = self.next_uid
        self.next_uid += 1
        envelope = Envelope(
            date=FIXED_DATE,
            subject=subject,
            sender=(Sender(email="alice@example.com", name="Alice"),),
            to=(Sender(email="me@example.com"),),
        )
        self.mailboxes[mailbox][uid] = StoredMessage(
            envelope=envelope, flags=set(flags), **extra
        )
        return uid

    def _uids(self, uid_set: str) -> list[int]:
        return [int(uid) for uid in uid_set.split(",")]

    def fetch_message(self, mailbox: str, uid: str) -> FullMessage | None:
        stored = self.mailboxes[mailbox].get(int(uid))
        if stored is None:
            return None
        return FullMessage(
            uid=int(uid),
            flags=tuple(sorted(stored.flags)),
            envelope=stored.envelope,
            size=100,
            internal_date=FIXED_DATE,
            text_body=stored.text_body,
            html_body=stored.html_body,
            attachments=list(stored.attachments),
        )

    def list_messages(
        self,
        mailbox: str,
        start_seq: int | None = None,
        page_size: int | None = None,
        *,
        before_uid: int | None = None,
    ) -> MessagePage:
        uids = sorted(self.mailboxes[mailbox])
        if before_uid is not None:
            uids = [uid for uid in uids if uid < before_uid]
        if page_size:
            uids = uids[-page_size:]
        summaries = [
            MessageSummary(
                uid=uid,
                flags=tuple(self.mailboxes[mailbox][uid].flags),
                envelope=self.mailboxes[mailbox][uid].envelope,
            )
            for uid in uids
        ]
        token = None
        if page_size and len(summaries) >= page_size:
            token = str(summaries[0].uid)
        return MessagePage(messages=summaries, next_page_token=token)

    def set_flags(self, mailbox: str, uids: str, flags: Sequence[str]) -> None:
        for uid in self._uids(uids):
            self.mailboxes[mailbox][uid].flags.update(flags)

    def unset_flags(self, mailbox: str, uids: str, flags: Sequence[str]) -> None:
        for uid in self._uids(uids):
            self.mailboxes[mailbox][uid].flags.difference_update(flags)

    def move_message(self, mailbox: str, uid: str, destination: str) -> None:
        if self.fail_moves or destination not in self.mailboxes:
            raise ImapError(
                f"MOVE to '{destination}' failed: [TRYCREATE] Mailbox doesn't exist",
                operation="move_message",
                mailbox=mailbox,
                uid=uid,
            )
        for source_uid in self._uids(uid):
            stored = self.mailboxes[mailbox].pop(source_uid)
            self.mailboxes[destination][self.next_uid] = stored
            self.next_uid += 1

    def download_attachment(self, mailbox: str, uid: str, part_id: str):
        stored = self.mailboxes[mailbox].get(int(uid))
        if stored is None or part_id not in stored.blobs:
            return None
        return io.BytesIO(stored.blobs[part_id])

    def list_mailboxes(self) -> list[Mailbox]:
        return [
            Mailbox(path="[Gmail]", name="[Gmail]", delimiter="/", flags=("\\Noselect",)),
            *(Mailbox(path=path, name=path, delimiter="/") for path in self.mailboxes),
        ]

    def status(self, mailbox: str) -> dict[str, int]:
        if mailbox in self.fail_status:
            raise ImapError("STATUS failed: NO", operation="status", mailbox=mailbox)
        stored = self.mailboxes[mailbox]
        unseen = sum(1 for message in stored.values() if "\\Seen" not in message.flags)
        return {"messages": len(stored), "unseen": unseen}

    def append(self, mailbox: str, raw_message: bytes, flags: Sequence[str] = ()):
        if self.fail_append:
            raise ImapError("APPEND failed: NO [OVERQUOTA]", operation="append")
        parsed = message_from_bytes(raw_message)
        envelope = Envelope(
            subject=parsed["Subject"],
            to=tuple(
                Sender(email=address)
                for _, address in getaddresses(parsed.get_all("To", []))
            ),
            message_id=parsed["Message-ID"],
        )
        uid = self.next_uid
        self.next_uid += 1
        self.mailboxes[mailbox][uid] = StoredMessage(
            envelope=envelope,
            flags=set(flags),
            text_body=parsed.get_payload(),
        )
        return str(uid) if self.report_append_uid else None

    def search_header(self, mailbox: str, header: str, value: str) -> list[int]:
        assert header == "Message-ID"
        return [
            uid
            for uid, stored in self.mailboxes[mailbox].items()
            if stored.envelope.message_id == value
        ]

    def disconnect(self) -> None:
        self.disconnected = True


class FakeSmtpClient:
    def __init__(self) -> None:
        self.sent: list[MailSendOptions] = []

    def send(self, options: MailSendOptions) -> SendResult:
        self.sent.append(options)
        return SendResult(message_id="<sent@example.com>", response="250 2.0.0 Ok")


class FakePop3Session:
    def __init__(self, messages: list[bytes]) -> None:
        self.messages = messages
        self.quit_called = False

    def list_messages(self) -> list[int]:
        return list(range(1, len(self.messages) + 1))

    def fetch_message(self, seq: int) -> bytes:
        if not 1 <= seq <= len(self.messages):
            raise NotFoundError(f"POP3 message {seq} not retrievable", uid=seq)
        return self.messages[seq - 1]

    def quit(self) -> None:
        self.quit_called = True


@pytest.fixture
def imap() -> FakeImapSession:
    return FakeImapSession()


@pytest.fixture
def smtp() -> FakeSmtpClient:
    return FakeSmtpClient()


@pytest.fixture
def manager(imap: FakeImapSession, smtp: FakeSmtpClient) -> GenericMailManager:
    credentials = ConnectionCredentials(
        email="me@example.com",
        password=SecretStr("password"),
        name="Me Myself",
        imap=ImapSettings(host="imap.test"),
        smtp=SmtpSettings(host="smtp.test"),
    )
    return GenericMailManager(credentials, imap=imap, smtp=smtp)  # type: ignore[arg-type]


@pytest.fixture
def pop3_manager() -> GenericMailManager:
    credentials = ConnectionCredentials(
        email="me@example.com",
        password=SecretStr("password"),
        pop3=Pop3Settings(host="pop.test"),
    )
    messages = [
        f"From: sender{index}@example.com\r\nSubject: Message {index}\r\n\r\nBody {index}".encode()
        for index in (1, 2, 3)
    ]
    return GenericMailManager(credentials, pop3=FakePop3Session(messages))  # type: ignore[arg-type]


def test_manager_uses_password_capability(manager: GenericMailManager) -> None:
    assert manager.capability is Capability.PASSWORD


def test_flag_round_trip_reflects_in_get(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    uid = imap.add("INBOX", "Hello")
    message_id = f"INBOX:{uid}"

    manager.mark_as_read([message_id])
    assert manager.get(message_id).latest.read is True

    manager.mark_as_unread([message_id])
    thread = manager.get(message_id)
    assert thread.latest.read is False
    assert thread.has_unread is True


def test_get_maps_message_fields(manager: GenericMailManager, imap: FakeImapSession) -> None:
    uid = imap.add(
        "INBOX",
        "Quarterly report",
        flags=["\\Seen", "\\Flagged"],
        text_body="plain text",
        html_body="<p>html</p>",
        attachments=[
            MimePart(
                part_id="2",
                content_type="application/pdf",
                size=2048,
                disposition="attachment",
                filename="report.pdf",
            )
        ],
    )

    thread = manager.get(f"INBOX:{uid}")

    message = thread.latest
    assert thread.messages == [message]
    assert thread.total_replies == 0
    assert message.id == f"INBOX:{uid}"
    assert message.subject == "Quarterly report"
    assert message.sender == Sender(email="alice@example.com", name="Alice")
    assert message.body_plain == "plain text"
    assert message.body_html == "<p>html</p>"
    assert message.received_on == FIXED_DATE
    assert [(label.id, label.name, label.type) for label in message.labels] == [
        ("\\Flagged", "Flagged", "system"),
        ("\\Seen", "Seen", "system"),
    ]
    assert len(message.attachments) == 1
    attachment = message.attachments[0]
    assert attachment.content_type == "application/pdf"
    assert attachment.id == "2"
    assert attachment.name == "report.pdf"


def test_bare_numeric_id_refers_to_inbox(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    uid = imap.add("INBOX", "Bare")

    assert manager.get(str(uid)).latest.id == f"INBOX:{uid}"


def test_get_unknown_or_malformed_id_raises_not_found(
    manager: GenericMailManager,
) -> None:
    with pytest.raises(NotFoundError):
        manager.get("INBOX:404")
    with pytest.raises(NotFoundError):
        manager.get("not-an-id")


def test_list_pages_newest_first(manager: GenericMailManager, imap: FakeImapSession) -> None:
    uids = [imap.add("INBOX", f"Message {index}") for index in range(5)]

    first = manager.list_threads("INBOX", max_results=2)
    second = manager.list_threads("INBOX", max_results=2, page_token=first.next_page_token)
    last = manager.list_threads("INBOX", max_results=2, page_token=second.next_page_token)

    assert [thread.id for thread in first.threads] == [f"INBOX:{uids[4]}", f"INBOX:{uids[3]}"]
    assert [thread.id for thread in second.threads] == [f"INBOX:{uids[2]}", f"INBOX:{uids[1]}"]
    assert [thread.id for thread in last.threads] == [f"INBOX:{uids[0]}"]
    assert last.next_page_token is None


def test_delete_moves_message_to_trash(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    uid = imap.add("INBOX", "Unwanted")

    manager.delete(f"INBOX:{uid}")

    assert manager.list_threads("INBOX").threads == []
    assert len(manager.list_threads("Trash").threads) == 1


def test_delete_falls_back_to_deleted_flag_and_still_fails(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    uid = imap.add("INBOX", "Unwanted")
    imap.fail_moves = True

    with pytest.raises(PartialFailureError) as excinfo:
        manager.delete(f"INBOX:{uid}")

    assert "\\Deleted" in imap.mailboxes["INBOX"][uid].flags
    assert isinstance(excinfo.value.__cause__, ImapError)
    assert "TRYCREATE" in excinfo.value.message
    assert excinfo.value.to_dict()["applied"] == "\\Deleted flag set in INBOX"


def test_starred_label_sets_only_starred_flag(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    uid = imap.add("INBOX", "Keep", flags=["\\Seen"])

    manager.modify_labels([f"INBOX:{uid}"], add_labels=["STARRED"], remove_labels=[])

    assert imap.mailboxes["INBOX"][uid].flags == {"\\Seen", "\\Starred"}


def test_trash_and_archive_labels_move_messages(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    trashed = imap.add("INBOX", "Trash me")
    archived = imap.add("INBOX", "Archive me", flags=["\\Flagged"])

    manager.modify_labels([f"INBOX:{trashed}"], add_labels=["TRASH"])
    manager.modify_labels(
        [f"INBOX:{archived}"], add_labels=[], remove_labels=["INBOX", "IMPORTANT"]
    )

    assert imap.mailboxes["INBOX"] == {}
    assert len(imap.mailboxes["Trash"]) == 1
    (archived_message,) = imap.mailboxes["Archive"].values()
    assert archived_message.envelope.subject == "Archive me"
    assert archived_message.flags == set()


def test_get_attachment_returns_base64(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    uid = imap.add("INBOX", "With file", blobs={"2": b"%PDF-1.4"})

    assert manager.get_attachment(f"INBOX:{uid}", "2") == base64.b64encode(
        b"%PDF-1.4"
    ).decode()
    assert manager.get_attachment(f"INBOX:{uid}", "3") is None


def test_create_sends_from_account_address(
    manager: GenericMailManager, smtp: FakeSmtpClient
) -> None:
    result = manager.create(
        OutgoingMessage(
            to=[Sender(email="bob@example.com", name="Bob")],
            cc=[Sender(email="carol@example.com")],
            subject="Hi",
            message="Hello Bob",
        )
    )

    assert result.message_id == "<sent@example.com>"
    (options,) = smtp.sent
    assert options.sender == "Me Myself <me@example.com>"
    assert options.to == ["bob@example.com"]
    assert options.cc == ["carol@example.com"]
    assert options.text == "Hello Bob"


def test_draft_lifecycle(
    manager: GenericMailManager, imap: FakeImapSession, smtp: FakeSmtpClient
) -> None:
    data = OutgoingMessage(
        to=[Sender(email="bob@example.com")], subject="Draft subject", message="Draft body"
    )

    result = manager.create_draft(data)

    assert result.success is True
    assert result.id is not None and result.id.startswith("Drafts:")
    draft = manager.get_draft(result.id)
    assert draft.subject == "Draft subject"
    assert draft.to == ["bob@example.com"]
    assert draft.content == "Draft body"
    assert [thread.id for thread in manager.list_drafts().threads] == [result.id]

    manager.send_draft(result.id, data)

    assert len(smtp.sent) == 1
    draft_uid = int(result.id.rpartition(":")[2])
    assert "\\Deleted" in imap.mailboxes["Drafts"][draft_uid].flags


def test_draft_uid_resolved_by_message_id_search(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    imap.report_append_uid = False

    result = manager.create_draft(OutgoingMessage(to=[], subject="No APPENDUID"))

    assert result.success is True
    assert result.id == f"Drafts:{imap.next_uid - 1}"


def test_draft_append_failure_is_reported(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    imap.fail_append = True

    result = manager.create_draft(OutgoingMessage(to=[], subject="x"))

    assert result.success is False
    assert result.id is None
    assert "OVERQUOTA" in (result.error or "")


def test_get_draft_rejects_non_drafts(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    uid = imap.add("Drafts", "Not really a draft")

    with pytest.raises(NotFoundError):
        manager.get_draft(f"Drafts:{uid}")


def test_labels_combine_system_flags_and_folders(manager: GenericMailManager) -> None:
    labels = manager.get_user_labels()

    system = [label.id for label in labels if label.type == "system"]
    folders = [label.id for label in labels if label.type == "folder"]
    assert system == ["\\Seen", "\\Starred", "\\Flagged", "\\Draft", "\\Deleted"]
    assert "INBOX" in folders and "Trash" in folders
    assert manager.get_label("Trash").type == "folder"
    with pytest.raises(NotFoundError):
        manager.get_label("Nope")


def test_count_skips_containers_and_tolerates_status_failures(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    imap.add("INBOX", "One")
    imap.add("INBOX", "Two")
    imap.fail_status.add("Archive")

    counts = manager.count()

    assert LabelCount(label="INBOX", count=2) in counts
    assert LabelCount(label="Archive", count=None) in counts
    assert all(entry.label != "[Gmail]" for entry in counts)


def test_account_helpers(manager: GenericMailManager) -> None:
    info = manager.get_user_info()
    assert info.address == "me@example.com"
    assert info.name == "Me Myself"
    assert info.photo == ""

    (alias,) = manager.get_email_aliases()
    assert alias.email == "me@example.com"
    assert alias.primary is True

    assert manager.normalize_ids(["5", "Archive:7", "junk"]) == {
        "thread_ids": ["INBOX:5", "Archive:7", "junk"]
    }


def test_oauth_surface_is_inert(manager: GenericMailManager) -> None:
    with pytest.raises(UnsupportedOperationError):
        manager.get_tokens("code")
    assert manager.get_scope() == ""
    assert manager.revoke_refresh_token("token") is False


def test_context_manager_closes_sessions(
    manager: GenericMailManager, imap: FakeImapSession
) -> None:
    with manager:
        pass

    assert imap.disconnected is True


def test_pop3_only_manager_lists_sequence_ids(pop3_manager: GenericMailManager) -> None:
    listing = pop3_manager.list_threads("INBOX")

    assert [thread.id for thread in listing.threads] == ["1", "2", "3"]
    assert listing.next_page_token is None


def test_pop3_get_is_always_read_without_labels(
    pop3_manager: GenericMailManager,
) -> None:
    thread = pop3_manager.get("2")

    message = thread.latest
    assert message.id == "2"
    assert message.subject == "Message 2"
    assert message.body_plain == "Body 2"
    assert message.read is True
    assert message.labels == []
    assert thread.has_unread is False


def test_pop3_only_manager_rejects_writes(pop3_manager: GenericMailManager) -> None:
    with pytest.raises(NotFoundError):
        pop3_manager.get("9")
    with pytest.raises(UnsupportedOperationError):
        pop3_manager.mark_as_read(["1"])
    with pytest.raises(UnsupportedOperationError):
        pop3_manager.delete("1")
    with pytest.raises(UnsupportedOperationError):
        pop3_manager.create(OutgoingMessage(to=[Sender(email="bob@example.com")]))


def test_pop3_only_manager_reports_inbox_label_and_count(
    pop3_manager: GenericMailManager,
) -> None:
    assert [label.id for label in pop3_manager.get_user_labels()] == ["INBOX"]
    assert pop3_manager.count() == [LabelCount(label="INBOX", count=3)]


def test_bare_pop3_ids_are_not_applied_to_imap_uids(
    imap: FakeImapSession, smtp: FakeSmtpClient
) -> None:
    credentials = ConnectionCredentials(
        email="me@example.com",
        password=SecretStr("password"),
        imap=ImapSettings(host="imap.test"),
        smtp=SmtpSettings(host="smtp.test"),
        pop3=Pop3Settings(host="pop.test"),
    )
    pop3 = FakePop3Session([b"Subject: one\r\n\r\n1", b"Subject: two\r\n\r\n2"])
    manager = GenericMailManager(credentials, imap=imap, smtp=smtp, pop3=pop3)  # type: ignore[arg-type]
    uids = [imap.add("INBOX", "First"), imap.add("INBOX", "Second")]

    assert [thread.id for thread in manager.list_threads("INBOX").threads] == ["1", "2"]
    with pytest.raises(UnsupportedOperationError, match="POP3 sequence number"):
        manager.delete("2")
    with pytest.raises(UnsupportedOperationError):
        manager.mark_as_read(["1"])
    with pytest.raises(UnsupportedOperationError):
        manager.modify_labels(["2"], add_labels=["STARRED"])

    assert sorted(imap.mailboxes["INBOX"]) == uids
    assert all(not message.flags for message in imap.mailboxes["INBOX"].values())

    manager.mark_as_read([f"INBOX:{uids[1]}"])
    assert imap.mailboxes["INBOX"][uids[1]].flags == {"\\Seen"}
