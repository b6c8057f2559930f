"""Protocol interfaces shared by every mail driver."""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import Any, Protocol

from .models import (
    DraftResult,
    EmailAlias,
    Label,
    LabelCount,
    OutgoingMessage,
    ParsedDraft,
    SendResult,
    ThreadList,
    ThreadResponse,
    UserInfo,
)


class Capability(Enum):
    """How a driver authenticates; callers branch on this instead of catching."""

    PASSWORD = "password"
    OAUTH = "oauth"


class MailManager(Protocol):
    """Uniform mail surface implemented by every provider driver."""

    capability: Capability

    def get(self, message_id: str) -> ThreadResponse:
        """Return one message presented as a thread."""
        raise NotImplementedError

    def list_threads(
        self,
        folder: str,
        *,
        max_results: int | None = None,
        page_token: str | None = None,
    ) -> ThreadList:
        """Return a page of message ids from ``folder``."""
        raise NotImplementedError

    def create(self, data: OutgoingMessage) -> SendResult:
        """Send a new message."""
        raise NotImplementedError

    def mark_as_read(self, message_ids: Sequence[str]) -> None:
        raise NotImplementedError

    def mark_as_unread(self, message_ids: Sequence[str]) -> None:
        raise NotImplementedError

    def delete(self, message_id: str) -> None:
        """Remove a message; implementations may only partially apply."""
        raise NotImplementedError

    def get_attachment(self, message_id: str, attachment_id: str) -> str | None:
        """Return the attachment content base64-encoded, or ``None``."""
        raise NotImplementedError

    def create_draft(self, data: OutgoingMessage) -> DraftResult:
        raise NotImplementedError

    def get_draft(self, draft_id: str) -> ParsedDraft:
        raise NotImplementedError

    def list_drafts(
        self,
        *,
        max_results: int | None = None,
        page_token: str | None = None,
    ) -> ThreadList:
        raise NotImplementedError

    def send_draft(self, draft_id: str, data: OutgoingMessage) -> SendResult:
        raise NotImplementedError

    def modify_labels(
        self,
        message_ids: Sequence[str],
        *,
        add_labels: Sequence[str] = (),
        remove_labels: Sequence[str] = (),
    ) -> None:
        """Apply label additions and removals to each message."""
        raise NotImplementedError

    def get_user_labels(self) -> list[Label]:
        raise NotImplementedError

    def get_label(self, label_id: str) -> Label:
        raise NotImplementedError

    def create_label(self, name: str) -> None:
        raise NotImplementedError

    def update_label(self, label_id: str, name: str) -> None:
        raise NotImplementedError

    def delete_label(self, label_id: str) -> None:
        raise NotImplementedError

    def count(self) -> list[LabelCount]:
        """Return message totals per folder."""
        raise NotImplementedError

    def get_user_info(self) -> UserInfo:
        raise NotImplementedError

    def normalize_ids(self, ids: Sequence[str]) -> dict[str, list[str]]:
        raise NotImplementedError

    def get_email_aliases(self) -> list[EmailAlias]:
        raise NotImplementedError

    def close(self) -> None:
        """Release any network resources."""
        raise NotImplementedError


class OAuthCapable(Protocol):
    """Token operations offered by OAuth-backed drivers."""

    def get_tokens(self, code: str) -> dict[str, Any]:
        raise NotImplementedError

    def get_scope(self) -> str:
        raise NotImplementedError

    def revoke_refresh_token(self, refresh_token: str) -> bool:
        raise NotImplementedError


class PasswordDecryptor(Protocol):
    """Secret-management collaborator that reverses at-rest encryption."""

    def decrypt(self, ciphertext: str) -> str:
        """Return the plaintext for a stored credential."""
        raise NotImplementedError


__all__ = ["Capability", "MailManager", "OAuthCapable", "PasswordDecryptor"]
