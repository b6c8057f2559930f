"""Password-authenticated driver composing IMAP, SMTP, and POP3 sessions."""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from email.utils import formataddr, make_msgid
from types import TracebackType
from typing import Any

from ..core.config import ConnectionCredentials, MailSettings
from ..core.datetime_utils import utcnow
from ..core.errors import (
    MailError,
    NotFoundError,
    PartialFailureError,
    ProtocolError,
    UnsupportedOperationError,
)
from ..core.interfaces import Capability
from ..core.models import (
    AttachmentDescriptor,
    DraftResult,
    EmailAlias,
    FullMessage,
    Label,
    LabelCount,
    MailSendOptions,
    OutgoingMessage,
    ParsedDraft,
    ParsedMessage,
    SendResult,
    ThreadList,
    ThreadResponse,
    ThreadStub,
    UserInfo,
)
from ..ingestion.parser import EmailParser
from ..transport.imap_client import ImapSession
from ..transport.pop3_client import Pop3Session
from ..transport.smtp_client import SmtpClient
from .ids import MessageRef, decode_message_id, encode_message_id

LOGGER = logging.getLogger(__name__)

SEEN = "\\Seen"
DELETED = "\\Deleted"
DRAFT = "\\Draft"

# Labels that map onto IMAP flags rather than folders.
FLAG_LABELS = {
    "STARRED": "\\Starred",
    "IMPORTANT": "\\Flagged",
}

SYSTEM_LABELS = (
    (SEEN, "Read"),
    ("\\Starred", "Starred"),
    ("\\Flagged", "Flagged"),
    (DRAFT, "Draft"),
    (DELETED, "Deleted"),
)


class GenericMailManager:
    """Serve the uniform mail surface over raw IMAP/SMTP and optional POP3.

    Message ids are ``"<mailbox>:<uid>"`` tokens so every message-scoped call
    knows which folder to select. When a POP3 session is configured it serves
    reads of the inbox and its ids are bare sequence numbers, which are only
    valid until the maildrop changes. Everything that mutates server state
    needs IMAP.
    """

    capability = Capability.PASSWORD

    def __init__(
        self,
        credentials: ConnectionCredentials,
        settings: MailSettings | None = None,
        *,
        imap: ImapSession | None = None,
        smtp: SmtpClient | None = None,
        pop3: Pop3Session | None = None,
        parser: EmailParser | None = None,
    ) -> None:
        self._credentials = credentials
        self._settings = settings or MailSettings()
        timeout = self._settings.timeout_seconds

        if imap is None and credentials.imap is not None:
            imap = ImapSession(
                credentials.imap,
                credentials.email,
                credentials.password,
                timeout=timeout,
                default_page_size=self._settings.default_page_size,
            )
        if smtp is None and credentials.smtp is not None:
            smtp = SmtpClient(
                credentials.smtp, credentials.email, credentials.password, timeout=timeout
            )
        if pop3 is None and credentials.pop3 is not None:
            pop3 = Pop3Session(
                credentials.pop3, credentials.email, credentials.password, timeout=timeout
            )

        self._imap = imap
        self._smtp = smtp
        self._pop3 = pop3
        self._parser = parser or EmailParser()

    def __enter__(self) -> GenericMailManager:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # Reading ------------------------------------------------------------------
    def get(self, message_id: str) -> ThreadResponse:
        """Return one message as a single-message thread.

        Raises:
            NotFoundError: If the id is malformed or the message is gone
        """
        candidate = message_id.strip()
        if self._pop3 is not None and candidate.isdigit():
            parsed = self._get_from_pop3(candidate)
        else:
            ref = decode_message_id(candidate, self._settings.inbox_folder)
            imap = self._require_imap("get")
            message = imap.fetch_message(ref.mailbox, ref.uid)
            if message is None:
                raise NotFoundError(
                    "Message not found", operation="get", mailbox=ref.mailbox, uid=ref.uid
                )
            parsed = self._to_parsed_message(message, ref.mailbox)

        return ThreadResponse(
            messages=[parsed],
            latest=parsed,
            has_unread=not parsed.read,
            total_replies=0,
            labels=list(parsed.labels),
        )

    def list_threads(
        self,
        folder: str,
        *,
        max_results: int | None = None,
        page_token: str | None = None,
    ) -> ThreadList:
        """Return one page of message ids in ``folder``, newest first within the page.

        With ``max_results`` the first page holds the newest messages and
        ``page_token`` (the value returned by the previous page) walks back
        in time. Without it the page is the first ``default_page_size``
        messages of the folder, i.e. the oldest ones. POP3 listings always
        cover the whole maildrop and never paginate.
        """
        if self._pop3 is not None and self._is_inbox(folder):
            numbers = self._pop3.list_messages()
            return ThreadList(
                threads=[ThreadStub(id=str(number)) for number in numbers],
                next_page_token=None,
            )

        imap = self._require_imap("list")
        before_uid: int | None = None
        if page_token:
            if not page_token.isdigit():
                raise NotFoundError(
                    f"Unknown page token '{page_token}'", operation="list", mailbox=folder
                )
            before_uid = int(page_token)

        page = imap.list_messages(folder, page_size=max_results, before_uid=before_uid)
        threads = [
            ThreadStub(id=encode_message_id(folder, summary.uid))
            for summary in reversed(page.messages)
        ]
        return ThreadList(threads=threads, next_page_token=page.next_page_token)

    def get_attachment(self, message_id: str, attachment_id: str) -> str | None:
        """Return attachment bytes base64-encoded, or ``None`` when absent."""
        candidate = message_id.strip()
        content: bytes | None
        if self._pop3 is not None and candidate.isdigit():
            raw = self._pop3.fetch_message(int(candidate))
            content = self._parser.extract_attachment(raw, attachment_id)
        else:
            ref = decode_message_id(candidate, self._settings.inbox_folder)
            imap = self._require_imap("get_attachment")
            stream = imap.download_attachment(ref.mailbox, ref.uid, attachment_id)
            content = stream.read() if stream is not None else None
        if content is None:
            return None
        return base64.b64encode(content).decode("ascii")

    # Sending ------------------------------------------------------------------
    def create(self, data: OutgoingMessage) -> SendResult:
        """Send a new message from the account address."""
        smtp = self._require_smtp("create")
        return smtp.send(self._send_options(data))

    # Flags and labels ---------------------------------------------------------
    def mark_as_read(self, message_ids: Sequence[str]) -> None:
        imap = self._require_imap("mark_as_read")
        grouped = self._group_by_mailbox(message_ids, "mark_as_read")
        for mailbox, uids in grouped.items():
            imap.set_flags(mailbox, ",".join(uids), [SEEN])

    def mark_as_unread(self, message_ids: Sequence[str]) -> None:
        imap = self._require_imap("mark_as_unread")
        grouped = self._group_by_mailbox(message_ids, "mark_as_unread")
        for mailbox, uids in grouped.items():
            imap.unset_flags(mailbox, ",".join(uids), [SEEN])

    def modify_labels(
        self,
        message_ids: Sequence[str],
        *,
        add_labels: Sequence[str] = (),
        remove_labels: Sequence[str] = (),
    ) -> None:
        """Apply label changes.

        ``STARRED`` and ``IMPORTANT`` toggle flags. Adding ``TRASH`` moves the
        messages to the trash folder; otherwise removing ``INBOX`` archives
        them. Flag changes happen before any move.
        """
        imap = self._require_imap("modify_labels")
        adding = [label.upper() for label in add_labels]
        removing = [label.upper() for label in remove_labels]
        flags_to_add = [FLAG_LABELS[label] for label in adding if label in FLAG_LABELS]
        flags_to_remove = [
            FLAG_LABELS[label] for label in removing if label in FLAG_LABELS
        ]
        ignored = {
            label
            for label in (*adding, *removing)
            if label not in FLAG_LABELS and label not in ("TRASH", "INBOX")
        }
        if ignored:
            LOGGER.debug("Ignoring unsupported labels: %s", sorted(ignored))

        grouped = self._group_by_mailbox(message_ids, "modify_labels")
        for mailbox, uids in grouped.items():
            uid_set = ",".join(uids)
            if flags_to_add:
                imap.set_flags(mailbox, uid_set, flags_to_add)
            if flags_to_remove:
                imap.unset_flags(mailbox, uid_set, flags_to_remove)
            if "TRASH" in adding:
                imap.move_message(mailbox, uid_set, self._settings.trash_folder)
            elif "INBOX" in removing:
                imap.move_message(mailbox, uid_set, self._settings.archive_folder)

    def delete(self, message_id: str) -> None:
        """Move a message to trash.

        When the move fails the message is flagged ``\\Deleted`` where it is
        and the call still fails: a :class:`PartialFailureError` reports the
        flag that was applied, chained to the move error.
        """
        imap = self._require_imap("delete")
        ref = self._writable_ref(message_id, "delete")
        trash = self._settings.trash_folder
        try:
            imap.move_message(ref.mailbox, ref.uid, trash)
        except MailError as move_error:
            LOGGER.warning(
                "Moving %s to %s failed (%s); flagging it deleted instead",
                ref.encode(),
                trash,
                move_error,
            )
            try:
                imap.set_flags(ref.mailbox, ref.uid, [DELETED])
            except MailError as flag_error:
                LOGGER.error("Fallback delete flag on %s failed: %s", ref.encode(), flag_error)
                fallback_applied = False
            else:
                fallback_applied = True
            if not fallback_applied:
                raise
            raise PartialFailureError(
                f"Could not move message to '{trash}': {move_error.message}",
                applied=f"{DELETED} flag set in {ref.mailbox}",
                operation="delete",
                mailbox=ref.mailbox,
                uid=ref.uid,
            ) from move_error
        LOGGER.info("Moved %s to %s", ref.encode(), trash)

    def get_user_labels(self) -> list[Label]:
        """Return the fixed flag labels followed by one label per folder."""
        if self._imap is None:
            inbox = self._settings.inbox_folder
            return [Label(id=inbox, name=inbox, type="folder")]
        labels = [Label(id=flag, name=name, type="system") for flag, name in SYSTEM_LABELS]
        labels.extend(
            Label(id=mailbox.path, name=mailbox.name, type="folder")
            for mailbox in self._imap.list_mailboxes()
        )
        return labels

    def get_label(self, label_id: str) -> Label:
        for label in self.get_user_labels():
            if label.id == label_id:
                return label
        raise NotFoundError(f"Label '{label_id}' not found", operation="get_label")

    def create_label(self, name: str) -> None:
        LOGGER.warning("Creating label %r is not supported for IMAP accounts", name)

    def update_label(self, label_id: str, name: str) -> None:
        LOGGER.warning(
            "Renaming label %r to %r is not supported for IMAP accounts", label_id, name
        )

    def delete_label(self, label_id: str) -> None:
        LOGGER.warning("Deleting label %r is not supported for IMAP accounts", label_id)

    def count(self) -> list[LabelCount]:
        """Return message totals per selectable folder.

        A folder whose STATUS is rejected reports ``None``; connection and
        authentication failures still propagate.
        """
        if self._imap is None:
            pop3 = self._require_pop3("count")
            total = len(pop3.list_messages())
            return [LabelCount(label=self._settings.inbox_folder, count=total)]

        counts: list[LabelCount] = []
        for mailbox in self._imap.list_mailboxes():
            if not mailbox.selectable:
                continue
            try:
                status = self._imap.status(mailbox.path)
            except (ProtocolError, NotFoundError) as exc:
                LOGGER.error("Counting messages in %s failed: %s", mailbox.path, exc)
                counts.append(LabelCount(label=mailbox.path, count=None))
                continue
            counts.append(LabelCount(label=mailbox.path, count=status["messages"]))
        return counts

    # Drafts -------------------------------------------------------------------
    def create_draft(self, data: OutgoingMessage) -> DraftResult:
        """Append a plain header+body draft to the drafts folder."""
        imap = self._require_imap("create_draft")
        drafts = self._settings.drafts_folder
        message_id = make_msgid(domain=self._domain)
        raw_message = self._draft_block(data, message_id)
        try:
            uid = imap.append(drafts, raw_message, [DRAFT])
            if uid is None:
                matches = imap.search_header(drafts, "Message-ID", message_id)
                uid = str(max(matches)) if matches else None
        except MailError as exc:
            LOGGER.error("Saving draft to %s failed: %s", drafts, exc)
            return DraftResult(id=None, success=False, error=str(exc))

        if uid is None:
            LOGGER.warning("Draft %s saved but its UID could not be determined", message_id)
            return DraftResult(id=None, success=True)
        return DraftResult(id=encode_message_id(drafts, uid), success=True)

    def get_draft(self, draft_id: str) -> ParsedDraft:
        imap = self._require_imap("get_draft")
        ref = decode_message_id(draft_id, self._settings.drafts_folder)
        message = imap.fetch_message(ref.mailbox, ref.uid)
        if message is None or not message.draft:
            raise NotFoundError(
                "Draft not found or not a draft",
                operation="get_draft",
                mailbox=ref.mailbox,
                uid=ref.uid,
            )
        envelope = message.envelope
        return ParsedDraft(
            id=encode_message_id(ref.mailbox, message.uid),
            to=[sender.email for sender in envelope.to],
            cc=[sender.email for sender in envelope.cc],
            bcc=[sender.email for sender in envelope.bcc],
            subject=envelope.subject,
            content=message.text_body or message.html_body,
        )

    def list_drafts(
        self,
        *,
        max_results: int | None = None,
        page_token: str | None = None,
    ) -> ThreadList:
        return self.list_threads(
            self._settings.drafts_folder, max_results=max_results, page_token=page_token
        )

    def send_draft(self, draft_id: str, data: OutgoingMessage) -> SendResult:
        """Send ``data`` and flag the stored draft deleted (not expunged)."""
        imap = self._require_imap("send_draft")
        ref = decode_message_id(draft_id, self._settings.drafts_folder)
        result = self.create(data)
        try:
            imap.set_flags(ref.mailbox, ref.uid, [DELETED])
        except MailError as exc:
            raise PartialFailureError(
                f"Draft sent but could not be flagged deleted: {exc.message}",
                applied=f"message sent as {result.message_id}",
                operation="send_draft",
                mailbox=ref.mailbox,
                uid=ref.uid,
            ) from exc
        return result

    # Account ------------------------------------------------------------------
    def get_user_info(self) -> UserInfo:
        email = self._credentials.email
        return UserInfo(
            address=email,
            name=self._credentials.name or email.split("@")[0],
            photo="",
        )

    def get_email_aliases(self) -> list[EmailAlias]:
        return [
            EmailAlias(
                email=self._credentials.email,
                name=self._credentials.name,
                primary=True,
            )
        ]

    def normalize_ids(self, ids: Sequence[str]) -> dict[str, list[str]]:
        """Rewrite ids into canonical form; unrecognised ids pass through."""
        normalized: list[str] = []
        for raw_id in ids:
            candidate = raw_id.strip()
            if self._pop3 is not None and candidate.isdigit():
                normalized.append(candidate)
                continue
            try:
                ref = decode_message_id(candidate, self._settings.inbox_folder)
            except NotFoundError:
                normalized.append(raw_id)
                continue
            normalized.append(ref.encode())
        return {"thread_ids": normalized}

    # OAuth surface ------------------------------------------------------------
    def get_tokens(self, code: str) -> dict[str, Any]:
        raise UnsupportedOperationError(
            "Password-authenticated accounts have no OAuth tokens", operation="get_tokens"
        )

    def get_scope(self) -> str:
        return ""

    def revoke_refresh_token(self, refresh_token: str) -> bool:
        LOGGER.warning("Token revocation requested for a password-authenticated account")
        return False

    def close(self) -> None:
        """Tear down any open protocol sessions."""
        if self._imap is not None:
            self._imap.disconnect()
        if self._pop3 is not None:
            self._pop3.quit()

    # Internal helpers ---------------------------------------------------------
    @property
    def _domain(self) -> str | None:
        return self._credentials.email.rpartition("@")[2] or None

    def _is_inbox(self, folder: str) -> bool:
        return folder.upper() == self._settings.inbox_folder.upper()

    def _require_imap(self, operation: str) -> ImapSession:
        if self._imap is None:
            raise UnsupportedOperationError(
                f"'{operation}' requires an IMAP connection", operation=operation
            )
        return self._imap

    def _require_smtp(self, operation: str) -> SmtpClient:
        if self._smtp is None:
            raise UnsupportedOperationError(
                f"'{operation}' requires an SMTP connection", operation=operation
            )
        return self._smtp

    def _require_pop3(self, operation: str) -> Pop3Session:
        if self._pop3 is None:
            raise UnsupportedOperationError(
                f"'{operation}' requires a POP3 connection", operation=operation
            )
        return self._pop3

    def _get_from_pop3(self, seq: str) -> ParsedMessage:
        pop3 = self._require_pop3("get")
        raw_message = pop3.fetch_message(int(seq))
        return self._parser.parse(seq, raw_message, self._settings.inbox_folder)

    def _writable_ref(self, message_id: str, operation: str) -> MessageRef:
        """Decode an id for an IMAP mutation.

        While POP3 serves inbox reads, bare numbers are POP3 sequence numbers
        and must not be applied to IMAP UIDs.
        """
        candidate = message_id.strip()
        if self._pop3 is not None and candidate.isdigit():
            raise UnsupportedOperationError(
                f"'{operation}' needs a '<mailbox>:<uid>' id; "
                f"'{candidate}' is a POP3 sequence number",
                operation=operation,
                uid=candidate,
            )
        return decode_message_id(candidate, self._settings.inbox_folder)

    def _group_by_mailbox(
        self, message_ids: Sequence[str], operation: str
    ) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for message_id in message_ids:
            ref = self._writable_ref(message_id, operation)
            grouped.setdefault(ref.mailbox, []).append(ref.uid)
        return grouped

    def _from_address(self) -> str:
        if self._credentials.name:
            return formataddr((self._credentials.name, self._credentials.email))
        return self._credentials.email

    def _send_options(self, data: OutgoingMessage) -> MailSendOptions:
        return MailSendOptions(
            sender=self._from_address(),
            to=[recipient.email for recipient in data.to],
            cc=[recipient.email for recipient in data.cc],
            bcc=[recipient.email for recipient in data.bcc],
            subject=data.subject,
            text=data.message,
            html=data.html_body,
            attachments=list(data.attachments),
            headers=dict(data.headers),
            in_reply_to=data.in_reply_to,
            references=data.references,
        )

    def _draft_block(self, data: OutgoingMessage, message_id: str) -> bytes:
        lines = [
            f"From: {self._from_address()}",
            f"Subject: {data.subject or ''}",
            f"To: {', '.join(recipient.email for recipient in data.to)}",
        ]
        if data.cc:
            lines.append(f"Cc: {', '.join(recipient.email for recipient in data.cc)}")
        if data.bcc:
            lines.append(f"Bcc: {', '.join(recipient.email for recipient in data.bcc)}")
        lines.append(f"Message-ID: {message_id}")
        header_block = "\r\n".join(lines)
        return f"{header_block}\r\n\r\n{data.message or ''}".encode("utf-8")

    def _to_parsed_message(self, message: FullMessage, mailbox: str) -> ParsedMessage:
        envelope = message.envelope
        sent_on = envelope.date or utcnow()
        message_id = encode_message_id(mailbox, message.uid)
        return ParsedMessage(
            id=message_id,
            thread_id=message_id,
            mailbox=mailbox,
            subject=envelope.subject or "",
            sender=envelope.sender[0] if envelope.sender else None,
            to=list(envelope.to),
            cc=list(envelope.cc),
            bcc=list(envelope.bcc),
            body_plain=message.text_body,
            body_html=message.html_body,
            received_on=message.internal_date or sent_on,
            sent_on=sent_on,
            read=message.seen,
            labels=[
                Label(id=flag, name=flag.removeprefix("\\"), type="system")
                for flag in message.flags
            ],
            attachments=[
                AttachmentDescriptor(
                    id=part.part_id,
                    name=part.filename or f"attachment-{part.part_id}",
                    content_type=part.content_type,
                    size=part.size,
                )
                for part in message.attachments
            ],
            is_draft=message.draft,
            message_id=envelope.message_id,
        )


__all__ = ["FLAG_LABELS", "GenericMailManager", "SYSTEM_LABELS"]
