"""Driver registry and the resolver turning stored connections into drivers."""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import SecretStr, ValidationError

from ..core.config import (
    ConnectionCredentials,
    ConnectionRecord,
    ImapSettings,
    MailSettings,
    Pop3Settings,
    SmtpSettings,
)
from ..core.errors import ConfigurationError
from ..core.interfaces import MailManager, PasswordDecryptor
from .generic import GenericMailManager

LOGGER = logging.getLogger(__name__)

GENERIC_PROVIDER = "generic_imap_smtp"
OAUTH_PROVIDERS = frozenset({"google", "microsoft"})

DriverConstructor = Callable[[ConnectionCredentials, MailSettings | None], MailManager]

DRIVERS: dict[str, DriverConstructor] = {
    GENERIC_PROVIDER: GenericMailManager,
}


def register_driver(provider_id: str, constructor: DriverConstructor) -> None:
    """Make ``provider_id`` resolvable by :func:`create_driver`."""
    if provider_id in DRIVERS:
        LOGGER.warning("Replacing registered driver for provider %s", provider_id)
    DRIVERS[provider_id] = constructor


def create_driver(
    provider_id: str,
    credentials: ConnectionCredentials,
    settings: MailSettings | None = None,
) -> MailManager:
    """Instantiate the driver registered for ``provider_id``.

    Raises:
        ConfigurationError: If no driver is registered under that id
    """
    constructor = DRIVERS.get(provider_id)
    if constructor is None:
        raise ConfigurationError(f"Provider not supported: {provider_id}")
    return constructor(credentials, settings)


def validate_connection(record: ConnectionRecord) -> None:
    """Reject records that cannot produce a working driver.

    Raises:
        ConfigurationError: Naming what the record is missing
    """
    if record.provider_id in OAUTH_PROVIDERS:
        if not record.access_token or not record.refresh_token:
            raise ConfigurationError(
                "OAuth Connection is not properly authorized, please reconnect the connection"
            )
        return

    if record.provider_id == GENERIC_PROVIDER:
        missing = [
            field
            for field, value in (
                ("email", record.email),
                ("encryptedPassword", record.encrypted_password),
                ("smtpHost", record.smtp_host),
            )
            if not value
        ]
        if not record.imap_host and not record.pop3_host:
            missing.append("imapHost or pop3Host")
        if missing:
            raise ConfigurationError(
                f"IMAP/SMTP connection is missing {', '.join(missing)}"
            )
        return

    if not record.email:
        raise ConfigurationError("Connection is missing an email address")


def connection_to_credentials(
    record: ConnectionRecord, decryptor: PasswordDecryptor
) -> ConnectionCredentials:
    """Decrypt the stored password and build the credential bundle."""
    validate_connection(record)
    if not record.email or not record.encrypted_password:
        raise ConfigurationError("Password connection is missing its credentials")
    password = decryptor.decrypt(record.encrypted_password)

    imap = None
    if record.imap_host:
        imap = ImapSettings(
            host=record.imap_host,
            port=record.imap_port,
            secure=record.imap_secure,
            require_tls=record.imap_require_tls,
        )
    smtp = None
    if record.smtp_host:
        smtp = SmtpSettings(
            host=record.smtp_host, port=record.smtp_port, secure=record.smtp_secure
        )
    pop3 = None
    if record.pop3_host:
        pop3 = Pop3Settings(
            host=record.pop3_host,
            port=record.pop3_port or 995,
            tls=True if record.pop3_tls is None else record.pop3_tls,
        )

    try:
        return ConnectionCredentials(
            email=record.email,
            password=SecretStr(password),
            name=record.name,
            imap=imap,
            smtp=smtp,
            pop3=pop3,
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid connection settings: {exc}") from exc


def connection_to_driver(
    record: ConnectionRecord,
    decryptor: PasswordDecryptor,
    settings: MailSettings | None = None,
) -> MailManager:
    """Resolve a stored password connection into a ready driver.

    OAuth records are validated and then rejected: their drivers are built
    from tokens, not from a decrypted password.
    """
    if record.provider_id in OAUTH_PROVIDERS:
        validate_connection(record)
        raise ConfigurationError(f"Provider not supported: {record.provider_id}")
    credentials = connection_to_credentials(record, decryptor)
    LOGGER.debug(
        "Creating %s driver for %s", record.provider_id, credentials.email
    )
    return create_driver(record.provider_id, credentials, settings)


__all__ = [
    "DRIVERS",
    "DriverConstructor",
    "GENERIC_PROVIDER",
    "OAUTH_PROVIDERS",
    "connection_to_credentials",
    "connection_to_driver",
    "create_driver",
    "register_driver",
    "validate_connection",
]
