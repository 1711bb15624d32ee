# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Operation ledger endpoints for operators.

This module provides:
- GET /lifecycle/operations - List ledger entries
- GET /lifecycle/operations/{operation_id} - Entry with its audit trail
- GET /lifecycle/attention - Entries needing attention, and stale entries
- POST /lifecycle/operations/{operation_id}/compensate - Retry a failed
  compensation
"""

import logging

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_ledger, get_orchestrator, get_scanner
from src.api.errors import to_http_exception
from src.domains.lifecycle.errors import LedgerError, LifecycleError
from src.domains.lifecycle.ledger import OperationLedger
from src.domains.lifecycle.orchestrator import LifecycleOrchestrator
from src.domains.lifecycle.scanner import LedgerScanner
from src.domains.lifecycle.types import OperationKind, OperationStatus
from src.models.lifecycle import (
    AttentionReportResponse,
    LifecycleErrorResponse,
    LifecycleOperationListResponse,
    LifecycleOperationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/operations",
    response_model=LifecycleOperationListResponse,
    summary="List lifecycle operations",
)
async def list_operations(
    kind: OperationKind | None = Query(default=None),
    status_filter: OperationStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ledger: OperationLedger = Depends(get_ledger),
) -> LifecycleOperationListResponse:
    """List ledger entries, newest first."""
    operations, total = await ledger.list_operations(
        kind=kind,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return LifecycleOperationListResponse(
        items=[LifecycleOperationResponse.from_domain(op) for op in operations],
        total=total,
    )


@router.get(
    "/operations/{operation_id}",
    response_model=LifecycleOperationResponse,
    summary="Get a lifecycle operation",
    responses={404: {"description": "Operation not found", "model": LifecycleErrorResponse}},
)
async def get_operation(
    operation_id: str,
    ledger: OperationLedger = Depends(get_ledger),
) -> LifecycleOperationResponse:
    """Get a ledger entry with its audit trail."""
    try:
        operation = await ledger.get(operation_id)
        events = await ledger.events(operation_id)
    except LedgerError as e:
        raise to_http_exception(e)

    return LifecycleOperationResponse.from_domain(operation, events=events)


@router.get(
    "/attention",
    response_model=AttentionReportResponse,
    summary="Operations needing attention",
    description="""
    Run the ledger scan now.

    `needs_attention` lists provisionings whose compensation failed: an
    identity account exists without a profile. `stale` lists operations
    that have not reached a terminal state within the staleness window.
    """,
)
async def get_attention_report(
    scanner: LedgerScanner = Depends(get_scanner),
) -> AttentionReportResponse:
    """Scan the ledger for entries an operator should look at."""
    report = await scanner.scan()
    return AttentionReportResponse(
        needs_attention=[LifecycleOperationResponse.from_domain(op) for op in report.needs_attention],
        stale=[LifecycleOperationResponse.from_domain(op) for op in report.stale],
        scanned_at=report.scanned_at,
    )


@router.post(
    "/operations/{operation_id}/compensate",
    response_model=LifecycleOperationResponse,
    summary="Retry compensation",
    description="""
    Retry deleting the identity account of a provisioning awaiting
    compensation: either its profile write and first compensation both
    failed, or its account was created after the provisioning failed.
    On success the operation ends as `failed` with reason
    `ProfileCreationFailed-Compensated` or `IdentityCreationFailed-Compensated`.
    """,
    responses={
        404: {"description": "Operation not found", "model": LifecycleErrorResponse},
        409: {"description": "Operation is not awaiting compensation", "model": LifecycleErrorResponse},
        500: {"description": "Compensation failed again", "model": LifecycleErrorResponse},
    },
)
async def retry_compensation(
    operation_id: str,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> LifecycleOperationResponse:
    """Retry compensation of a ledger entry."""
    logger.info("Compensation retry requested: %s", operation_id)

    try:
        operation = await orchestrator.retry_compensation(operation_id)
    except (LifecycleError, LedgerError) as e:
        logger.warning("Compensation retry failed for %s: %s", operation_id, e)
        raise to_http_exception(e)

    return LifecycleOperationResponse.from_domain(operation)
