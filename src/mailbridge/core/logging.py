"""Console logging setup driven by :class:`LoggingSettings`."""

from __future__ import annotations

import logging.config
from typing import Any

from .config import LoggingSettings

TRANSPORT_LOGGER = "mailbridge.transport"

_FORMATTERS: dict[bool, dict[str, str]] = {
    True: {"format": "{asctime} {levelname} {name} {message}", "style": "{"},
    False: {"format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s"},
}


def build_logging_config(settings: LoggingSettings) -> dict[str, Any]:
    """Return the ``dictConfig`` mapping for ``settings``.

    Records go to a single stderr handler on the root logger. When
    ``transport_level`` is set, the ``mailbridge.transport`` subtree gets
    its own level so protocol chatter can be raised or silenced alone.
    """
    loggers: dict[str, dict[str, Any]] = {}
    if settings.transport_level:
        loggers[TRANSPORT_LOGGER] = {"level": settings.transport_level}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"console": _FORMATTERS[settings.structured]},
        "handlers": {
            "stderr": {
                "class": "logging.StreamHandler",
                "formatter": "console",
                "stream": "ext://sys.stderr",
            }
        },
        "loggers": loggers,
        "root": {"level": settings.level, "handlers": ["stderr"]},
    }


def configure_logging(settings: LoggingSettings) -> None:
    """Install the console handler and levels described by ``settings``."""
    logging.config.dictConfig(build_logging_config(settings))


__all__ = ["TRANSPORT_LOGGER", "build_logging_config", "configure_logging"]
