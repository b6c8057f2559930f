"""SMTP client for submitting messages with proper error handling and security."""

from __future__ import annotations

import logging
import mimetypes
import smtplib
import ssl
from email import encoders, policy
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from pathlib import Path

from pydantic import SecretStr

from ..core.config import SmtpSettings
from ..core.errors import AuthenticationError, MailConnectionError, ProtocolError
from ..core.models import MailSendOptions, OutgoingAttachment, SendResult

LOGGER = logging.getLogger(__name__)

_ACCEPTED_RCPT = (250, 251)


class SmtpError(ProtocolError):
    """Raised when the SMTP server rejects the sender, recipients, or data."""


class SmtpClient:
    """SMTP client for sending email.

    A fresh connection is opened for every submission and closed afterwards,
    so the client itself holds no socket between calls.

    Example:
        >>> settings = SmtpSettings(host="smtp.example.com", port=587)
        >>> client = SmtpClient(settings, "me@example.com", SecretStr("pw"))
        >>> client.send(MailSendOptions(sender="me@example.com", to=[...], subject="Hi"))
    """

    def __init__(
        self,
        settings: SmtpSettings,
        username: str,
        password: SecretStr,
        *,
        timeout: float = 30.0,
    ) -> None:
        """Initialize SMTP client with configuration.

        Args:
            settings: SMTP endpoint settings
            username: Login name, normally the account address
            password: Plaintext password
            timeout: Socket timeout in seconds
        """
        self._settings = settings
        self._username = username
        self._password = password
        self._timeout = timeout

    def send(self, options: MailSendOptions) -> SendResult:
        """Compose and submit a message.

        Args:
            options: Resolved sender, recipients, bodies, and attachments

        Returns:
            The Message-ID placed on the message and the server's DATA reply

        Raises:
            AuthenticationError: If the server rejects the credentials
            MailConnectionError: If the server cannot be reached
            SmtpError: If the server refuses the sender, all recipients, or data
        """
        recipients = [*options.to, *options.cc, *options.bcc]
        if not recipients:
            raise SmtpError("At least one recipient is required", operation="send")

        mime_message = build_mime_message(options)
        message_id = str(mime_message["Message-ID"])
        LOGGER.info(
            "Preparing to send email to %s: %s", ", ".join(options.to), options.subject
        )
        LOGGER.debug("Email headers: %s", dict(mime_message.items()))

        connection = self._connect()
        try:
            code, reply = connection.mail(options.sender)
            if code != 250:
                raise smtplib.SMTPSenderRefused(code, reply, options.sender)

            refused: dict[str, tuple[int, bytes]] = {}
            for recipient in recipients:
                code, reply = connection.rcpt(recipient)
                if code not in _ACCEPTED_RCPT:
                    refused[recipient] = (code, reply)
            if len(refused) == len(recipients):
                raise smtplib.SMTPRecipientsRefused(refused)
            if refused:
                LOGGER.warning("Some recipients were refused: %s", refused)

            code, reply = connection.data(mime_message.as_bytes())
            if code != 250:
                connection.rset()
                raise smtplib.SMTPDataError(code, reply)
        except smtplib.SMTPServerDisconnected as exc:
            LOGGER.error("SMTP server disconnected during send: %s", exc)
            raise MailConnectionError(
                f"SMTP server disconnected: {exc}", operation="send"
            ) from exc
        except smtplib.SMTPRecipientsRefused as exc:
            LOGGER.error("All recipients refused: %s", exc.recipients)
            raise SmtpError(
                f"All recipients refused: {exc.recipients}", operation="send"
            ) from exc
        except smtplib.SMTPSenderRefused as exc:
            LOGGER.error("Sender refused: %s", exc)
            raise SmtpError(f"Sender refused: {exc}", operation="send") from exc
        except smtplib.SMTPDataError as exc:
            LOGGER.error("SMTP data error: %s", exc)
            raise SmtpError(f"SMTP data error: {exc}", operation="send") from exc
        except smtplib.SMTPException as exc:
            LOGGER.error("Failed to send email: %s", exc)
            raise SmtpError(f"Failed to send email: {exc}", operation="send") from exc
        except OSError as exc:
            LOGGER.error("Network error while sending email: %s", exc)
            raise MailConnectionError(f"Network error: {exc}", operation="send") from exc
        finally:
            _quit_quietly(connection)

        response = f"{code} {_decode_reply(reply)}".strip()
        LOGGER.info("Email %s accepted: %s", message_id, response)
        return SendResult(message_id=message_id, response=response)

    def verify_connection(self) -> bool:
        """Return whether connecting and authenticating succeeds."""
        try:
            connection = self._connect()
        except (AuthenticationError, MailConnectionError, SmtpError) as exc:
            LOGGER.warning("SMTP verification against %s failed: %s", self._settings.host, exc)
            return False
        _quit_quietly(connection)
        return True

    def _connect(self) -> smtplib.SMTP:
        """Open, secure, and authenticate a connection.

        Raises:
            AuthenticationError: If login is rejected
            MailConnectionError: If the connection or TLS negotiation fails
            SmtpError: For any other SMTP-level failure
        """
        host, port = self._settings.host, self._settings.port
        LOGGER.info("Attempting SMTP connection to %s:%d", host, port)
        context = ssl.create_default_context()
        connection: smtplib.SMTP | None = None
        try:
            if self._settings.secure:
                LOGGER.debug("Using implicit TLS for SMTP connection")
                connection = smtplib.SMTP_SSL(
                    host, port, timeout=self._timeout, context=context
                )
            else:
                connection = smtplib.SMTP(host, port, timeout=self._timeout)
                connection.ehlo()
                if connection.has_extn("starttls"):
                    LOGGER.debug("Using STARTTLS for SMTP connection")
                    connection.starttls(context=context)
                    connection.ehlo()
                elif self._settings.require_tls:
                    raise MailConnectionError(
                        f"SMTP server {host} does not offer STARTTLS",
                        operation="connect",
                    )

            LOGGER.debug("Authenticating as %s", self._username)
            connection.login(self._username, self._password.get_secret_value())
            LOGGER.info("Connected to SMTP server: %s", host)
            return connection

        except MailConnectionError:
            _quit_quietly(connection)
            raise
        except smtplib.SMTPAuthenticationError as exc:
            _quit_quietly(connection)
            LOGGER.error("SMTP authentication failed: %s", exc)
            raise AuthenticationError(
                f"SMTP authentication failed for {self._username}", operation="login"
            ) from exc
        except (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected) as exc:
            _quit_quietly(connection)
            LOGGER.error("SMTP connection failed: %s", exc)
            raise MailConnectionError(
                f"Failed to connect to SMTP server {host}:{port}: {exc}",
                operation="connect",
            ) from exc
        except smtplib.SMTPException as exc:
            _quit_quietly(connection)
            LOGGER.error("SMTP error: %s", exc)
            raise SmtpError(f"SMTP error: {exc}", operation="connect") from exc
        except OSError as exc:
            _quit_quietly(connection)
            LOGGER.error("Network error connecting to SMTP server: %s", exc)
            raise MailConnectionError(
                f"Network error: {exc}", operation="connect"
            ) from exc


def build_mime_message(options: MailSendOptions) -> MIMEMultipart:
    """Build the MIME tree for ``options``.

    Bodies go into a ``multipart/alternative`` part; with attachments that
    part is wrapped in ``multipart/mixed``. Bcc recipients never appear in
    the headers.
    """
    alternative = MIMEMultipart("alternative", policy=policy.SMTP)
    if options.text is not None or options.html is None:
        alternative.attach(
            MIMEText(options.text or "", "plain", "utf-8", policy=policy.SMTP)
        )
    if options.html is not None:
        alternative.attach(MIMEText(options.html, "html", "utf-8", policy=policy.SMTP))

    if options.attachments:
        mime_message = MIMEMultipart("mixed", policy=policy.SMTP)
        mime_message.attach(alternative)
        for attachment in options.attachments:
            mime_message.attach(_attachment_part(attachment))
    else:
        mime_message = alternative

    mime_message["From"] = options.sender
    mime_message["To"] = ", ".join(options.to)
    if options.cc:
        mime_message["Cc"] = ", ".join(options.cc)
    mime_message["Subject"] = options.subject
    mime_message["Date"] = formatdate(localtime=False)

    # Thread headers for proper email threading
    if options.in_reply_to:
        mime_message["In-Reply-To"] = options.in_reply_to
    if options.references:
        mime_message["References"] = options.references

    for name, value in options.headers.items():
        del mime_message[name]
        mime_message[name] = value

    if "Message-ID" not in mime_message:
        domain = options.sender.rpartition("@")[2].strip("> ") or None
        mime_message["Message-ID"] = make_msgid(domain=domain)
    return mime_message


def _attachment_part(attachment: OutgoingAttachment) -> MIMEBase:
    if attachment.content is not None:
        payload = (
            attachment.content.encode("utf-8")
            if isinstance(attachment.content, str)
            else attachment.content
        )
    elif attachment.path:
        payload = Path(attachment.path).read_bytes()
    else:
        payload = b""

    content_type = (
        attachment.content_type
        or mimetypes.guess_type(attachment.filename)[0]
        or "application/octet-stream"
    )
    maintype, _, subtype = content_type.partition("/")
    part = MIMEBase(maintype, subtype or "octet-stream", policy=policy.SMTP)
    part.set_payload(payload)
    encoders.encode_base64(part)
    part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
    LOGGER.debug("Added attachment %s (%d bytes)", attachment.filename, len(payload))
    return part


def _decode_reply(reply: bytes | str) -> str:
    if isinstance(reply, bytes):
        return reply.decode("utf-8", errors="replace")
    return reply


def _quit_quietly(connection: smtplib.SMTP | None) -> None:
    if connection is None:
        return
    try:
        connection.quit()
        LOGGER.debug("SMTP connection closed")
    except (smtplib.SMTPException, OSError) as exc:
        LOGGER.warning("Error closing SMTP connection: %s", exc)
        connection.close()


__all__ = ["SmtpClient", "SmtpError", "build_mime_message"]
