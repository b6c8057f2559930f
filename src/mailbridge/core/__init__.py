"""Core utilities for configuration, logging, errors, and shared models."""

from .config import (
    AppSettings,
    ConnectionCredentials,
    ConnectionRecord,
    MailSettings,
    load_app_settings,
)
from .errors import (
    AuthenticationError,
    ConfigurationError,
    MailConnectionError,
    MailError,
    NotFoundError,
    PartialFailureError,
    ProtocolError,
    UnsupportedOperationError,
)
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "AuthenticationError",
    "ConfigurationError",
    "ConnectionCredentials",
    "ConnectionRecord",
    "MailConnectionError",
    "MailError",
    "MailSettings",
    "NotFoundError",
    "PartialFailureError",
    "ProtocolError",
    "UnsupportedOperationError",
    "configure_logging",
    "load_app_settings",
]
