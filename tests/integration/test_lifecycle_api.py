# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for Lifecycle ledger API endpoints."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api.dependencies import get_ledger, get_orchestrator, get_scanner
from src.api.v1 import router as v1_router
from src.domains.lifecycle.errors import (
    CompensationFailedError,
    InvalidTransitionError,
    OperationNotFoundError,
)
from src.domains.lifecycle.scanner import ScanReport
from src.domains.lifecycle.types import (
    FailureReason,
    LifecycleEvent,
    LifecycleOperation,
    OperationKind,
    OperationStatus,
    StepState,
    StepStatus,
)

CREATED = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


def make_operation(
    operation_id: str = "req-1",
    status: OperationStatus = OperationStatus.COMPLETED,
    **overrides,
) -> LifecycleOperation:
    """Build a provision ledger entry."""
    fields = {
        "operation_id": operation_id,
        "kind": OperationKind.PROVISION,
        "status": status,
        "steps": (
            StepState("identity", StepStatus.DONE, 0),
            StepState("profile", StepStatus.DONE, 1),
        ),
        "target_account_id": "acc-1",
        "payload": {"email": "ana.lee@school.org", "proposed_account_id": "acc-1"},
        "created_at": CREATED,
    }
    fields.update(overrides)
    return LifecycleOperation(**fields)


@pytest.fixture
def mock_ledger():
    """Create mock operation ledger."""
    ledger = MagicMock()
    ledger.list_operations = AsyncMock()
    ledger.get = AsyncMock()
    ledger.events = AsyncMock(return_value=[])
    return ledger


@pytest.fixture
def mock_scanner():
    """Create mock ledger scanner."""
    scanner = MagicMock()
    scanner.scan = AsyncMock()
    return scanner


@pytest.fixture
def mock_orchestrator():
    """Create mock orchestrator."""
    orchestrator = MagicMock()
    orchestrator.retry_compensation = AsyncMock()
    return orchestrator


@pytest.fixture
def app(mock_ledger, mock_scanner, mock_orchestrator):
    """Create test FastAPI app."""
    app = FastAPI()
    app.include_router(v1_router)
    app.dependency_overrides[get_ledger] = lambda: mock_ledger
    app.dependency_overrides[get_scanner] = lambda: mock_scanner
    app.dependency_overrides[get_orchestrator] = lambda: mock_orchestrator
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


class TestLifecycleAPIRouting:
    """Tests for lifecycle API routing."""

    def test_routes_registered(self, app):
        """Test that lifecycle routes are registered."""
        routes = [route.path for route in app.routes]

        assert "/api/v1/lifecycle/operations" in routes
        assert "/api/v1/lifecycle/operations/{operation_id}" in routes
        assert "/api/v1/lifecycle/operations/{operation_id}/compensate" in routes
        assert "/api/v1/lifecycle/attention" in routes


class TestOperationsEndpoints:
    """Tests for the ledger query endpoints."""

    def test_list_operations_forwards_filters(self, client, mock_ledger):
        """Test filters and paging reach the ledger."""
        mock_ledger.list_operations.return_value = ([make_operation()], 1)

        response = client.get(
            "/api/v1/lifecycle/operations",
            params={"kind": "provision", "status": "completed", "limit": 10},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["operation_id"] == "req-1"
        mock_ledger.list_operations.assert_awaited_once_with(
            kind=OperationKind.PROVISION,
            status=OperationStatus.COMPLETED,
            limit=10,
            offset=0,
        )

    def test_list_operations_rejects_unknown_status(self, client, mock_ledger):
        """Test an unknown status filter is rejected."""
        response = client.get("/api/v1/lifecycle/operations", params={"status": "archived"})

        assert response.status_code == 422
        mock_ledger.list_operations.assert_not_called()

    def test_get_operation_includes_events(self, client, mock_ledger):
        """Test an entry is returned with its audit trail."""
        mock_ledger.get.return_value = make_operation()
        mock_ledger.events.return_value = [
            LifecycleEvent("req-1", "begun", None, CREATED),
            LifecycleEvent("req-1", "completed", None, CREATED),
        ]

        response = client.get("/api/v1/lifecycle/operations/req-1")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert [e["event"] for e in body["events"]] == ["begun", "completed"]
        assert [s["name"] for s in body["steps"]] == ["identity", "profile"]

    def test_get_unknown_operation_is_404(self, client, mock_ledger):
        """Test an unknown operation id maps to 404."""
        mock_ledger.get.side_effect = OperationNotFoundError("missing")

        response = client.get("/api/v1/lifecycle/operations/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error_kind"] == "NotFound"


class TestAttentionEndpoint:
    """Tests for GET /api/v1/lifecycle/attention."""

    def test_attention_report(self, client, mock_scanner):
        """Test orphaned and stale entries are listed separately."""
        orphan = make_operation(
            "req-orphan",
            status=OperationStatus.NEEDS_COMPENSATION,
            failure_reason=FailureReason.COMPENSATION_FAILED.value,
            failed_step="profile",
        )
        stale = make_operation("req-stale", status=OperationStatus.PENDING)
        mock_scanner.scan.return_value = ScanReport(
            needs_attention=[orphan], stale=[stale], scanned_at=CREATED
        )

        response = client.get("/api/v1/lifecycle/attention")

        assert response.status_code == 200
        body = response.json()
        assert body["needs_attention"][0]["operation_id"] == "req-orphan"
        assert body["needs_attention"][0]["needs_attention"] is True
        assert body["stale"][0]["operation_id"] == "req-stale"


class TestCompensateEndpoint:
    """Tests for POST /api/v1/lifecycle/operations/{operation_id}/compensate."""

    def test_compensation_succeeds(self, client, mock_orchestrator):
        """Test a successful retry returns the failed-compensated entry."""
        mock_orchestrator.retry_compensation.return_value = make_operation(
            "req-orphan",
            status=OperationStatus.FAILED,
            failure_reason=FailureReason.PROFILE_COMPENSATED.value,
        )

        response = client.post("/api/v1/lifecycle/operations/req-orphan/compensate")

        assert response.status_code == 200
        assert response.json()["failure_reason"] == "ProfileCreationFailed-Compensated"

    def test_not_awaiting_compensation_is_409(self, client, mock_orchestrator):
        """Test compensating an entry in the wrong status maps to 409."""
        mock_orchestrator.retry_compensation.side_effect = InvalidTransitionError(
            "req-1", "completed", "compensate"
        )

        response = client.post("/api/v1/lifecycle/operations/req-1/compensate")

        assert response.status_code == 409

    def test_compensation_fails_again_is_500(self, client, mock_orchestrator):
        """Test a repeated compensation failure maps to 500."""
        mock_orchestrator.retry_compensation.side_effect = CompensationFailedError(
            "Identity acc-1 still orphaned", operation_id="req-orphan"
        )

        response = client.post("/api/v1/lifecycle/operations/req-orphan/compensate")

        assert response.status_code == 500
        assert response.json()["detail"]["needs_attention"] is True
