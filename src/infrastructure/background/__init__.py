# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background job scheduling."""

from src.infrastructure.background.scheduler import JobScheduler, ScheduledJob

__all__ = ["JobScheduler", "ScheduledJob"]
