"""Settings models for accounts, folders and logging, plus the env loader."""

from __future__ import annotations

import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator
from pydantic.alias_generators import to_camel


class ImapSettings(BaseModel):
    """Endpoint settings for the IMAP session."""

    host: str = Field(description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP port")
    secure: bool = Field(
        default=True, description="Implicit TLS on connect (IMAPS, usually 993)"
    )
    require_tls: bool = Field(
        default=True,
        description="Fail unless STARTTLS succeeds when not connecting securely",
    )


class SmtpSettings(BaseModel):
    """Endpoint settings for SMTP submission."""

    host: str = Field(description="SMTP hostname")
    port: int = Field(default=587, ge=1, le=65535, description="SMTP port")
    secure: bool = Field(
        default=False, description="Implicit TLS (SMTPS, usually 465)"
    )
    require_tls: bool = Field(
        default=False,
        description="Fail unless STARTTLS succeeds when not connecting securely",
    )


class Pop3Settings(BaseModel):
    """Endpoint settings for the optional POP3 session."""

    host: str = Field(description="POP3 hostname")
    port: int = Field(default=995, ge=1, le=65535, description="POP3 port")
    tls: bool = Field(default=True, description="Implicit TLS (POP3S)")


class ConnectionCredentials(BaseModel):
    """Decrypted credential bundle and endpoints for one mailbox."""

    model_config = ConfigDict(frozen=True)

    email: str = Field(description="Account address, also the login username")
    password: SecretStr = Field(description="Plaintext password, already decrypted")
    name: str | None = Field(default=None, description="Display name for From")
    imap: ImapSettings | None = Field(default=None)
    smtp: SmtpSettings | None = Field(default=None)
    pop3: Pop3Settings | None = Field(default=None)

    @model_validator(mode="after")
    def _require_read_transport(self) -> ConnectionCredentials:
        if self.imap is None and self.pop3 is None:
            raise ValueError("at least one of imap or pop3 must be configured")
        return self


class MailSettings(BaseModel):
    """Folder names and protocol tuning shared by the generic driver."""

    inbox_folder: str = Field(default="INBOX", description="Assumed mailbox")
    drafts_folder: str = Field(default="Drafts", description="Draft store")
    trash_folder: str = Field(default="Trash", description="Delete target")
    archive_folder: str = Field(default="Archive", description="Archive target")
    default_page_size: int = Field(
        default=100, ge=1, description="Messages listed when no size is given"
    )
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Socket timeout for every protocol call"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle brace-style structured log lines"
    )
    transport_level: str | None = Field(
        default=None, description="Override level for protocol transport logs"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    mail: MailSettings = Field(default_factory=MailSettings)
    account: ConnectionCredentials | None = Field(default=None)


class ConnectionRecord(BaseModel):
    """Normalized connection row handed over by the session/database layer.

    Accepts the camelCase keys of the stored record. Absent endpoint flags
    fall back to the conventional submission defaults.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider_id: str
    email: str | None = None
    name: str | None = None
    encrypted_password: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    imap_host: str | None = None
    imap_port: int = 993
    imap_secure: bool = True
    imap_require_tls: bool = Field(default=True, alias="imapRequireTLS")
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_secure: bool = False
    pop3_host: str | None = None
    pop3_port: int | None = None
    pop3_tls: bool | None = None


ENV_PREFIX = "MAILBRIDGE_"

_LITERALS: dict[str, Any] = {"": None, "true": True, "false": False}


def _prefixed(values: Mapping[str, str | None]) -> dict[str, str | None]:
    return {key: value for key, value in values.items() if key.startswith(ENV_PREFIX)}


def _coerce(value: str | None) -> Any:
    """Map empty strings to ``None`` and true/false to booleans."""
    if value is None:
        return None
    return _LITERALS.get(value.lower(), value)


def _nest(flat: Mapping[str, str | None]) -> dict[str, Any]:
    """Expand ``MAILBRIDGE_A__B=v`` keys into ``{"a": {"b": v}}``."""
    tree: dict[str, Any] = {}
    for key, value in flat.items():
        path = [part.lower() for part in key[len(ENV_PREFIX):].split("__") if part]
        if not path:
            continue
        node = tree
        for part in path[:-1]:
            node = cast(dict[str, Any], node.setdefault(part, {}))
        node[path[-1]] = _coerce(value)
    return tree


def _collect_env_values(
    env_file: Path | str | None, include_environment: bool
) -> dict[str, Any]:
    """Gather prefixed values; the process environment wins over the file."""
    flat: dict[str, str | None] = {}
    if env_file and Path(env_file).is_file():
        flat.update(_prefixed(dotenv_values(env_file)))
    if include_environment:
        flat.update(_prefixed(os.environ))
    return _nest(flat)


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Build :class:`AppSettings` from an optional env file, the environment and overrides.

    Raises:
        pydantic.ValidationError: If the merged values do not validate
    """
    values = _collect_env_values(env_file, include_environment)
    values.update(overrides)
    return AppSettings.model_validate(values)


__all__ = [
    "AppSettings",
    "ConnectionCredentials",
    "ConnectionRecord",
    "ENV_PREFIX",
    "ImapSettings",
    "LoggingSettings",
    "MailSettings",
    "Pop3Settings",
    "SmtpSettings",
    "load_app_settings",
]
