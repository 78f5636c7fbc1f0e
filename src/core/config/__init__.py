# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package for the tuition payment worker.

Settings are Pydantic-based and loaded from environment variables.

Example:
    >>> from src.core.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.retry.max_attempts)
    3
"""

from src.core.config.settings import (
    DatabaseSettings,
    LedgerSettings,
    MessagingSettings,
    RabbitMQSettings,
    RetrySettings,
    Settings,
    WorkerSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    "clear_settings_cache",
    # Subsettings
    "DatabaseSettings",
    "RabbitMQSettings",
    "MessagingSettings",
    "RetrySettings",
    "LedgerSettings",
    "WorkerSettings",
]
