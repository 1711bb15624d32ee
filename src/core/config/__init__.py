# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package for the student lifecycle service.

This package provides centralized configuration management:
- Settings: Pydantic-based settings loaded from environment variables
- ConfigurationError: raised at startup when a required handle cannot be built

Example:
    >>> from src.core.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.environment)
    'development'
"""

from src.core.config.settings import (
    APISettings,
    CORSSettings,
    FirebaseSettings,
    LedgerDatabaseSettings,
    LifecycleSettings,
    Settings,
    clear_settings_cache,
    get_settings,
)


class ConfigurationError(Exception):
    """Raised when the service is misconfigured.

    Startup code raises this instead of handing out a half-initialised
    client, so a broken deployment fails before serving any request.
    """

    pass


__all__ = [
    "APISettings",
    "CORSSettings",
    "ConfigurationError",
    "FirebaseSettings",
    "LedgerDatabaseSettings",
    "LifecycleSettings",
    "Settings",
    "clear_settings_cache",
    "get_settings",
]
