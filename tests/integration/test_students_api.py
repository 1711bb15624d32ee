# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for Students API endpoints."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api.dependencies import get_ledger, get_orchestrator
from src.api.v1 import router as v1_router
from src.domains.lifecycle.errors import (
    CompensationFailedError,
    DuplicateOperationError,
    IdentityCreationFailedError,
    InvalidInputError,
    ProfileCreationCompensatedError,
    RetireStepFailedError,
    StoreUnavailableError,
)
from src.domains.lifecycle.types import ProvisionOutcome, RetireOutcome
from src.infrastructure.database import DatabaseError

PROVISION_BODY = {
    "email": "ana.lee@school.org",
    "password": "secret1",
    "first_name": "Ana",
    "last_name": "Lee",
    "class_id": "4A",
    "request_id": "req-ana-lee",
}


@pytest.fixture
def mock_orchestrator():
    """Create mock orchestrator."""
    orchestrator = MagicMock()
    orchestrator.provision_student = AsyncMock()
    orchestrator.retire_student = AsyncMock()
    return orchestrator


@pytest.fixture
def app(mock_orchestrator):
    """Create test FastAPI app."""
    app = FastAPI()
    app.include_router(v1_router)
    app.dependency_overrides[get_orchestrator] = lambda: mock_orchestrator
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


class TestStudentsAPIRouting:
    """Tests for students API routing."""

    def test_routes_registered(self, app):
        """Test that student routes are registered."""
        routes = [route.path for route in app.routes]

        assert "/api/v1/students" in routes
        assert "/api/v1/students/{account_id}" in routes


class TestProvisionEndpoint:
    """Tests for POST /api/v1/students."""

    def test_provision_success(self, client, mock_orchestrator):
        """Test a provisioned student returns 201 with the account id."""
        mock_orchestrator.provision_student.return_value = ProvisionOutcome(
            account_id="acc-1", operation_id="req-ana-lee"
        )

        response = client.post("/api/v1/students", json=PROVISION_BODY)

        assert response.status_code == 201
        assert response.json() == {
            "account_id": "acc-1",
            "operation_id": "req-ana-lee",
            "resumed": False,
        }
        request = mock_orchestrator.provision_student.call_args.args[0]
        assert request.email == "ana.lee@school.org"
        assert request.request_id == "req-ana-lee"

    def test_invalid_input_is_422_with_problems(self, client, mock_orchestrator):
        """Test validation problems are reported per field."""
        mock_orchestrator.provision_student.side_effect = InvalidInputError(
            {"email": "not a valid email address"}
        )

        response = client.post("/api/v1/students", json={**PROVISION_BODY, "email": "nope"})

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["error_kind"] == "InvalidInput"
        assert detail["problems"] == {"email": "not a valid email address"}

    def test_email_taken_is_409(self, client, mock_orchestrator):
        """Test an already registered email maps to 409."""
        mock_orchestrator.provision_student.side_effect = IdentityCreationFailedError(
            "Email already registered", operation_id="req-ana-lee", already_exists=True
        )

        response = client.post("/api/v1/students", json=PROVISION_BODY)

        assert response.status_code == 409
        assert response.json()["detail"]["already_exists"] is True

    def test_identity_outage_is_502_and_retryable(self, client, mock_orchestrator):
        """Test an identity provider outage maps to 502."""
        mock_orchestrator.provision_student.side_effect = IdentityCreationFailedError(
            "Identity provider unavailable", operation_id="req-ana-lee", retryable=True
        )

        response = client.post("/api/v1/students", json=PROVISION_BODY)

        assert response.status_code == 502
        assert response.json()["detail"]["retryable"] is True

    def test_compensated_is_502(self, client, mock_orchestrator):
        """Test a compensated profile failure maps to 502."""
        mock_orchestrator.provision_student.side_effect = ProfileCreationCompensatedError(
            "Profile write failed; identity removed", operation_id="req-ana-lee"
        )

        response = client.post("/api/v1/students", json=PROVISION_BODY)

        assert response.status_code == 502
        assert response.json()["detail"]["error_kind"] == "ProfileCreationFailed-Compensated"

    def test_compensation_failed_is_500_and_needs_attention(self, client, mock_orchestrator):
        """Test a failed compensation is flagged for an operator."""
        mock_orchestrator.provision_student.side_effect = CompensationFailedError(
            "Identity acc-1 orphaned", operation_id="req-ana-lee"
        )

        response = client.post("/api/v1/students", json=PROVISION_BODY)

        assert response.status_code == 500
        assert response.json()["detail"]["needs_attention"] is True

    def test_in_progress_is_409(self, client, mock_orchestrator):
        """Test a concurrent duplicate maps to 409."""
        mock_orchestrator.provision_student.side_effect = DuplicateOperationError(
            "Operation req-ana-lee is in progress", operation_id="req-ana-lee"
        )

        response = client.post("/api/v1/students", json=PROVISION_BODY)

        assert response.status_code == 409
        assert response.json()["detail"]["error_kind"] == "DuplicateOperation"

    def test_ledger_outage_is_503(self, client, mock_orchestrator):
        """Test an unreachable ledger maps to 503."""
        mock_orchestrator.provision_student.side_effect = DatabaseError("connection refused")

        response = client.post("/api/v1/students", json=PROVISION_BODY)

        assert response.status_code == 503
        assert response.json()["detail"]["error_kind"] == "LedgerUnavailable"

    def test_overlong_request_id_rejected(self, client, mock_orchestrator):
        """Test request ids longer than 128 characters are rejected."""
        response = client.post("/api/v1/students", json={**PROVISION_BODY, "request_id": "x" * 129})

        assert response.status_code == 422
        mock_orchestrator.provision_student.assert_not_called()


class TestRetireEndpoint:
    """Tests for DELETE /api/v1/students/{account_id}."""

    def test_retire_success(self, client, mock_orchestrator):
        """Test a retired student returns the per-step counts."""
        mock_orchestrator.retire_student.return_value = RetireOutcome(
            account_id="S1",
            operation_id="S1",
            deleted={"fees": 2, "results": 1, "profile": 1, "identity": 1},
        )

        response = client.delete("/api/v1/students/S1")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["deleted"]["fees"] == 2
        mock_orchestrator.retire_student.assert_awaited_once_with("S1", operation_id=None)

    def test_retire_passes_operation_id(self, client, mock_orchestrator):
        """Test the operation id query parameter is forwarded."""
        mock_orchestrator.retire_student.return_value = RetireOutcome(
            account_id="S1", operation_id="retire-S1", already_retired=True
        )

        response = client.delete("/api/v1/students/S1", params={"operation_id": "retire-S1"})

        assert response.status_code == 200
        assert response.json()["already_retired"] is True
        mock_orchestrator.retire_student.assert_awaited_once_with("S1", operation_id="retire-S1")

    def test_failed_step_is_503_with_step(self, client, mock_orchestrator):
        """Test a failed retirement step reports which step to resume."""
        mock_orchestrator.retire_student.side_effect = RetireStepFailedError(
            "results", "Deleting results failed", operation_id="S1"
        )

        response = client.delete("/api/v1/students/S1")

        assert response.status_code == 503
        detail = response.json()["detail"]
        assert detail["step"] == "results"
        assert detail["retryable"] is True


# =============================================================================
# End to end through the real orchestrator and ledger
# =============================================================================


@pytest.fixture
def wired_app(orchestrator, ledger):
    """Create an app wired to the real orchestrator over in-memory stores."""
    app = FastAPI()
    app.include_router(v1_router)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_ledger] = lambda: ledger
    return app


@pytest.fixture
async def http_client(wired_app):
    """Create an async client sharing the test's event loop."""
    transport = httpx.ASGITransport(app=wired_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestStudentLifecycleEndToEnd:
    """Provision and retire through HTTP."""

    @pytest.mark.asyncio
    async def test_provision_then_retire(self, http_client, identity_store, document_store):
        """Test a student can be provisioned and retired again."""
        response = await http_client.post("/api/v1/students", json=PROVISION_BODY)
        assert response.status_code == 201
        account_id = response.json()["account_id"]
        assert account_id in identity_store.accounts
        assert account_id in document_store.collections["students"]

        document_store.add("fees", "fee-1", {"studentId": account_id, "amount": 120})

        response = await http_client.delete(f"/api/v1/students/{account_id}")
        assert response.status_code == 200
        assert response.json()["deleted"]["fees"] == 1
        assert identity_store.accounts == {}
        assert account_id not in document_store.collections["students"]

        response = await http_client.get(f"/api/v1/lifecycle/operations/{account_id}")
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_resubmitted_provision_returns_same_account(self, http_client, identity_store):
        """Test resubmitting a request id does not create a second account."""
        first = await http_client.post("/api/v1/students", json=PROVISION_BODY)
        second = await http_client.post("/api/v1/students", json=PROVISION_BODY)

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json()["account_id"] == first.json()["account_id"]
        assert second.json()["resumed"] is True
        assert len(identity_store.accounts) == 1

    @pytest.mark.asyncio
    async def test_profile_outage_compensates(self, http_client, identity_store, document_store):
        """Test a profile outage removes the new identity again."""
        document_store.fail("put_document", *[StoreUnavailableError("down")] * 3)

        response = await http_client.post("/api/v1/students", json=PROVISION_BODY)

        assert response.status_code == 502
        assert response.json()["detail"]["error_kind"] == "ProfileCreationFailed-Compensated"
        assert identity_store.accounts == {}
