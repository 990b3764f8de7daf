# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package.

Pydantic-based settings loaded from environment variables.

Example:
    >>> from clubauth.core.config import get_settings
    >>> settings = get_settings()
    >>> settings.auth.bcrypt_rounds
    12
"""

from clubauth.core.config.settings import (
    AuthSettings,
    DatabaseSettings,
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
    "AuthSettings",
    "WorkerSettings",
]
