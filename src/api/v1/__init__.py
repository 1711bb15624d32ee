# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""API v1 routes package.

Modules:
    students: Student provisioning and retirement endpoints.
    lifecycle: Operation ledger endpoints for operators.
"""

from fastapi import APIRouter

from src.api.v1 import lifecycle, students

# Create the main v1 router
router = APIRouter(prefix="/api/v1")

router.include_router(students.router, prefix="/students", tags=["Students"])
router.include_router(lifecycle.router, prefix="/lifecycle", tags=["Lifecycle"])

__all__ = ["router"]
