# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Firebase Admin app initialization.

The service account comes from FIREBASE_SERVICE_ACCOUNT_JSON, either as
raw JSON or base64-encoded JSON. Startup fails with ConfigurationError
when it is missing or unreadable; the service never runs with a
half-initialised identity provider.

Example:
    from src.infrastructure.firebase import init_firebase_app

    app = init_firebase_app(settings.firebase)
"""

import base64
import binascii
import json
import logging
from typing import Any

import firebase_admin
from firebase_admin import credentials

from src.core.config import ConfigurationError
from src.core.config.settings import FirebaseSettings

logger = logging.getLogger(__name__)


def parse_service_account(raw: str) -> dict[str, Any]:
    """Decode service account credentials.

    Args:
        raw: JSON document, or the same document base64-encoded.

    Returns:
        The credentials as a dict.

    Raises:
        ConfigurationError: If the value is neither.
    """
    text = raw.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    try:
        decoded = base64.b64decode(text, validate=True).decode("utf-8")
        return json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            "FIREBASE_SERVICE_ACCOUNT_JSON is neither JSON nor base64-encoded JSON"
        ) from e


def init_firebase_app(settings: FirebaseSettings) -> firebase_admin.App:
    """Initialize (or reuse) the named Firebase Admin app.

    Args:
        settings: Firebase settings.

    Returns:
        The firebase_admin App handle.

    Raises:
        ConfigurationError: If credentials are missing or rejected.
    """
    try:
        app = firebase_admin.get_app(settings.app_name)
        logger.debug("Reusing Firebase app %s", settings.app_name)
        return app
    except ValueError:
        pass

    if settings.service_account_json is None:
        raise ConfigurationError("FIREBASE_SERVICE_ACCOUNT_JSON is not set")

    info = parse_service_account(settings.service_account_json.get_secret_value())
    project_id = settings.project_id or info.get("project_id")

    try:
        cred = credentials.Certificate(info)
        app = firebase_admin.initialize_app(
            cred,
            options={"projectId": project_id} if project_id else None,
            name=settings.app_name,
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid Firebase service account: {e}") from e

    logger.info("Firebase app %s initialized for project %s", settings.app_name, project_id)
    return app
