"""
Logging setup for applications using the Kii SDK.

The SDK itself only creates module loggers. Applications that want the
SDK's log output formatted consistently call setup_logging() once.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import KiiSettings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(settings: KiiSettings | None = None) -> logging.Logger:
    """Configure the ``kii_sdk`` logger from settings.

    Args:
        settings: SDK settings (defaults are read from the environment)

    Returns:
        The configured ``kii_sdk`` logger
    """
    settings = settings or KiiSettings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    sdk_logger = logging.getLogger("kii_sdk")
    sdk_logger.setLevel(level)
    sdk_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return sdk_logger
