# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Infrastructure layer for external service integrations.

This package contains clients and managers for:
- Ledger database connections (PostgreSQL, SQLite)
- Firebase Authentication and Cloud Firestore
- Background scheduling (APScheduler)
"""
