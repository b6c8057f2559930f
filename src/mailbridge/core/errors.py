"""Error taxonomy shared by every mail driver."""

from __future__ import annotations

from typing import Any


class MailError(RuntimeError):
    """Base class for failures surfaced by the mail access layer.

    Each subclass carries a stable ``code`` and the HTTP status the RPC
    boundary should answer with. Optional context (operation, mailbox, uid)
    is rendered into the message so wrapped protocol errors stay traceable.
    """

    code = "mail_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        mailbox: str | None = None,
        uid: str | int | None = None,
    ) -> None:
        """Store the message alongside optional protocol context."""
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.mailbox = mailbox
        self.uid = None if uid is None else str(uid)

    @property
    def context(self) -> dict[str, str]:
        """Return the non-empty context fields."""
        values = {
            "operation": self.operation,
            "mailbox": self.mailbox,
            "uid": self.uid,
        }
        return {key: value for key, value in values.items() if value is not None}

    def to_dict(self) -> dict[str, Any]:
        """Serialise the error for structured API responses."""
        return {"code": self.code, "message": self.message, "context": self.context}

    def __str__(self) -> str:
        context = self.context
        if not context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in context.items())
        return f"{self.message} ({details})"


class MailConnectionError(MailError):
    """Transport, socket, TLS, or DNS failure."""

    code = "connection_error"
    status_code = 502


class AuthenticationError(MailError):
    """Credentials were rejected at LOGIN/USER/PASS/AUTH."""

    code = "authentication_failed"
    status_code = 401


class NotFoundError(MailError):
    """Referenced message, draft, mailbox, or label does not exist."""

    code = "not_found"
    status_code = 404


class UnsupportedOperationError(MailError):
    """Operation is meaningless for the active transport."""

    code = "not_supported"
    status_code = 501


class PartialFailureError(MailError):
    """A mutation was applied but the intended follow-up failed.

    ``applied`` describes the side effect that did happen so callers can
    reconcile; the operation as a whole must still be treated as failed.
    """

    code = "partial_failure"
    status_code = 500

    def __init__(self, message: str, *, applied: str, **context: Any) -> None:
        super().__init__(message, **context)
        self.applied = applied

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["applied"] = self.applied
        return payload


class ProtocolError(MailError):
    """The server answered a command with NO/BAD or an unparsable reply."""

    code = "protocol_error"
    status_code = 502


class ConfigurationError(MailError):
    """A connection record is incomplete or names an unknown provider."""

    code = "invalid_connection"
    status_code = 400


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "MailConnectionError",
    "MailError",
    "NotFoundError",
    "PartialFailureError",
    "ProtocolError",
    "UnsupportedOperationError",
]
