# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Firebase adapters for the identity and document stores."""

from src.infrastructure.firebase.app import init_firebase_app, parse_service_account
from src.infrastructure.firebase.documents import FirestoreDocumentStore
from src.infrastructure.firebase.identity import FirebaseIdentityStore

__all__ = [
    "FirebaseIdentityStore",
    "FirestoreDocumentStore",
    "init_firebase_app",
    "parse_service_account",
]
