# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy models for the operation ledger."""

from src.infrastructure.database.models.base import Base, TimestampMixin
from src.infrastructure.database.models.lifecycle import (
    LifecycleEventRecord,
    LifecycleOperationRecord,
    LifecycleStepRecord,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "LifecycleEventRecord",
    "LifecycleOperationRecord",
    "LifecycleStepRecord",
]
