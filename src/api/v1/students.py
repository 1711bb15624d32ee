# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Student provisioning and retirement endpoints.

This module provides the endpoints the admin console calls:
- POST /students - Provision a student (identity account + profile)
- DELETE /students/{account_id} - Retire a student and their records

Both operations are idempotent per operation id. A failed request can
be resubmitted with the same ``request_id`` (provision) or
``operation_id`` (retire) and resumes where it stopped.

Example:
    POST /api/v1/students
    Body:
        {
            "email": "ana.lee@school.org",
            "password": "secret1",
            "first_name": "Ana",
            "last_name": "Lee",
            "class_id": "4A",
            "request_id": "enrol-2025-0042"
        }
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.api.dependencies import get_orchestrator
from src.api.errors import to_http_exception
from src.domains.lifecycle.errors import LedgerError, LifecycleError
from src.domains.lifecycle.orchestrator import LifecycleOrchestrator
from src.infrastructure.database import DatabaseError
from src.models.lifecycle import (
    LifecycleErrorResponse,
    ProvisionStudentRequest,
    ProvisionStudentResponse,
    RetireStudentResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _ledger_unavailable(e: DatabaseError) -> HTTPException:
    logger.error("Operation ledger unavailable: %s", e)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "error_kind": "LedgerUnavailable",
            "message": "Operation ledger unavailable, retry later",
            "operation_id": None,
            "needs_attention": False,
            "retryable": True,
        },
    )


@router.post(
    "",
    response_model=ProvisionStudentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Provision a student",
    description="""
    Create a student's identity account and then their profile document.

    If the profile cannot be written, the new account is deleted again
    and the request fails with `ProfileCreationFailed-Compensated`. If
    that deletion fails too, the request fails with
    `ProfileCreationFailed-CompensationFailed` and the operation appears
    in `GET /lifecycle/attention` until an operator resolves it.

    **Idempotent:** resubmitting the same `request_id` returns the
    original account id instead of creating a second account.
    """,
    responses={
        201: {"description": "Student provisioned", "model": ProvisionStudentResponse},
        409: {"description": "Email already registered, or operation in progress", "model": LifecycleErrorResponse},
        422: {"description": "Invalid input; nothing was written", "model": LifecycleErrorResponse},
        500: {"description": "Compensation failed; operator attention required", "model": LifecycleErrorResponse},
        502: {"description": "Identity or profile store failed", "model": LifecycleErrorResponse},
    },
)
async def provision_student(
    request: ProvisionStudentRequest,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> ProvisionStudentResponse:
    """Provision a student.

    Args:
        request: Provisioning request.
        orchestrator: Lifecycle orchestrator.

    Returns:
        ProvisionStudentResponse with the new account id.

    Raises:
        HTTPException: With the lifecycle error payload on failure.
    """
    logger.info("Provision request received: request_id=%s", request.request_id)

    try:
        outcome = await orchestrator.provision_student(request)
    except (LifecycleError, LedgerError) as e:
        logger.warning("Provision request failed: %s", e)
        raise to_http_exception(e)
    except DatabaseError as e:
        raise _ledger_unavailable(e)

    return ProvisionStudentResponse(
        account_id=outcome.account_id,
        operation_id=outcome.operation_id,
        resumed=outcome.resumed,
    )


@router.delete(
    "/{account_id}",
    response_model=RetireStudentResponse,
    summary="Retire a student",
    description="""
    Delete a student's fee records, academic results, profile document
    and identity account, in that order.

    A failed step returns 503 with the step name; resubmit with the same
    `operation_id` (defaults to the account id) to continue from that
    step. Retiring an already retired student succeeds without deleting
    anything.
    """,
    responses={
        200: {"description": "Student retired", "model": RetireStudentResponse},
        409: {"description": "Retirement already in progress", "model": LifecycleErrorResponse},
        422: {"description": "Invalid input", "model": LifecycleErrorResponse},
        503: {"description": "A step failed; resubmit to resume", "model": LifecycleErrorResponse},
    },
)
async def retire_student(
    account_id: str,
    operation_id: str | None = Query(default=None, max_length=128),
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> RetireStudentResponse:
    """Retire a student.

    Args:
        account_id: Account to retire.
        operation_id: Idempotency key, defaults to the account id.
        orchestrator: Lifecycle orchestrator.

    Returns:
        RetireStudentResponse with per-step deletion counts.

    Raises:
        HTTPException: With the lifecycle error payload on failure.
    """
    logger.info("Retire request received: account_id=%s", account_id)

    try:
        outcome = await orchestrator.retire_student(account_id, operation_id=operation_id)
    except (LifecycleError, LedgerError) as e:
        logger.warning("Retire request failed: %s", e)
        raise to_http_exception(e)
    except DatabaseError as e:
        raise _ledger_unavailable(e)

    return RetireStudentResponse(
        account_id=outcome.account_id,
        operation_id=outcome.operation_id,
        already_retired=outcome.already_retired,
        deleted=outcome.deleted,
    )
