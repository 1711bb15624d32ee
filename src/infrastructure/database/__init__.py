# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure for the operation ledger.

Example:
    from src.infrastructure.database import LedgerDatabase

    database = LedgerDatabase.from_settings(settings)
    await database.init()
    async with database.session() as session:
        ...
"""

from src.infrastructure.database.connection import DatabaseError, LedgerDatabase

__all__ = [
    "DatabaseError",
    "LedgerDatabase",
]
