# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Health check endpoints.

This module provides health and readiness endpoints for the API.
"""

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src import __version__
from src.core.config import get_settings
from src.infrastructure.database import LedgerDatabase

logger = logging.getLogger(__name__)

router = APIRouter()

# Track server start time for uptime calculation
_server_start_time = time.time()


class ComponentHealth(BaseModel):
    """Individual component health status."""
    status: str = Field(description="Component status")
    latency_ms: float | None = Field(None, description="Response latency in ms")
    message: str | None = Field(None, description="Additional status message")


class ComponentsHealth(BaseModel):
    """All components health status."""
    ledger_database: ComponentHealth | None = None
    scheduler: ComponentHealth | None = None


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(description="Overall health status")
    version: str = Field(description="API version")
    environment: str = Field(description="Deployment environment")
    uptime_seconds: int = Field(description="Server uptime in seconds")
    checked_at: datetime = Field(description="When health was checked")
    components: ComponentsHealth = Field(default_factory=ComponentsHealth)


async def check_ledger_database(database: LedgerDatabase | None) -> ComponentHealth:
    """Check the operation ledger database connection."""
    if database is None:
        return ComponentHealth(status="unhealthy", message="Ledger database not initialized")

    start = time.time()
    if not await database.check_connection():
        logger.error("Ledger database health check failed")
        return ComponentHealth(status="unhealthy", message="Ledger database unreachable")

    latency = (time.time() - start) * 1000
    return ComponentHealth(status="healthy", latency_ms=round(latency, 2))


def check_scheduler(request: Request) -> ComponentHealth:
    """Check that the ledger scan job is scheduled."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None or not scheduler.is_running:
        return ComponentHealth(status="degraded", message="Ledger scan not scheduled")

    stats = scheduler.get_stats()
    return ComponentHealth(
        status="healthy",
        message=f"{stats['job_count']} job(s), {stats['total_runs']} run(s), {stats['total_errors']} failed",
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Check if the API is healthy with component details.

    The ledger database decides overall health: without it no operation
    can start. A stopped scan job only degrades the service.

    Returns:
        HealthResponse with detailed status.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)

    db_health = await check_ledger_database(getattr(request.app.state, "database", None))
    scheduler_health = check_scheduler(request)

    if db_health.status != "healthy":
        overall_status = "unhealthy"
    elif scheduler_health.status != "healthy":
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        environment=settings.environment,
        uptime_seconds=int(time.time() - _server_start_time),
        checked_at=now,
        components=ComponentsHealth(
            ledger_database=db_health,
            scheduler=scheduler_health,
        ),
    )
