# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""FastAPI dependency injection definitions.

Service handles are built once at startup by init_services() and kept
on ``app.state``; endpoint dependencies read them from there. Tests
replace them with ``app.dependency_overrides``.

Example:
    @router.get("/operations/{operation_id}")
    async def get_operation(
        operation_id: str,
        ledger: OperationLedger = Depends(get_ledger),
    ):
        ...
"""

import logging

from fastapi import FastAPI, HTTPException, Request, status

from src.core.config import Settings
from src.domains.lifecycle.ledger import OperationLedger
from src.domains.lifecycle.orchestrator import LifecycleOrchestrator
from src.domains.lifecycle.retry import RetryPolicy, StepRunner
from src.domains.lifecycle.scanner import LedgerScanner
from src.infrastructure.background import JobScheduler
from src.infrastructure.database import LedgerDatabase
from src.infrastructure.firebase import (
    FirebaseIdentityStore,
    FirestoreDocumentStore,
    init_firebase_app,
)

logger = logging.getLogger(__name__)


async def init_services(app: FastAPI, settings: Settings) -> None:
    """Build the ledger, store adapters, orchestrator and scan job.

    Raises:
        ConfigurationError: If Firebase credentials are missing or invalid.
        DatabaseError: If the ledger database cannot be initialized.
    """
    database = LedgerDatabase.from_settings(settings)
    await database.init()
    await database.create_schema()
    app.state.database = database

    firebase_app = init_firebase_app(settings.firebase)
    identity_store = FirebaseIdentityStore(firebase_app)

    ledger = OperationLedger(database)
    app.state.ledger = ledger
    app.state.orchestrator = LifecycleOrchestrator(
        ledger=ledger,
        identity_store=identity_store,
        document_store=FirestoreDocumentStore(app=firebase_app),
        step_runner=StepRunner(RetryPolicy.from_settings(settings.lifecycle)),
        claim_lease_seconds=settings.lifecycle.claim_lease_seconds,
    )

    scanner = LedgerScanner(
        ledger,
        stale_after_minutes=settings.lifecycle.stale_after_minutes,
        identity_store=identity_store,
    )
    app.state.scanner = scanner

    scheduler = JobScheduler()
    scheduler.add_interval_job(
        name="Ledger Scan",
        func=scanner.scan,
        minutes=settings.lifecycle.scan_interval_minutes,
        start_immediately=True,
    )
    await scheduler.start()
    app.state.scheduler = scheduler


async def close_services(app: FastAPI) -> None:
    """Stop the scan job and close the ledger database."""
    scheduler: JobScheduler | None = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.stop()

    database: LedgerDatabase | None = getattr(app.state, "database", None)
    if database is not None:
        await database.close()


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        logger.error("Service %s requested before startup completed", name)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return value


def get_database(request: Request) -> LedgerDatabase:
    """Get the ledger database handle."""
    return _state(request, "database")


def get_ledger(request: Request) -> OperationLedger:
    """Get the operation ledger."""
    return _state(request, "ledger")


def get_orchestrator(request: Request) -> LifecycleOrchestrator:
    """Get the lifecycle orchestrator."""
    return _state(request, "orchestrator")


def get_scanner(request: Request) -> LedgerScanner:
    """Get the ledger scanner."""
    return _state(request, "scanner")
