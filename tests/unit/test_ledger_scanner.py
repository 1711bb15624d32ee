# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the ledger scanner."""

import logging
from datetime import datetime, timedelta

import pytest

from src.domains.lifecycle.errors import IdentityCreationFailedError, StoreUnavailableError
from src.domains.lifecycle.ledger import OperationLedger
from src.domains.lifecycle.orchestrator import LifecycleOrchestrator
from src.domains.lifecycle.scanner import LedgerScanner
from src.domains.lifecycle.types import (
    PROVISION_STEPS,
    RETIRE_STEPS,
    FailureReason,
    OperationKind,
    OperationStatus,
    StudentIdentity,
)
from src.models.lifecycle import ProvisionStudentRequest
from src.utils.datetime import utc_now


class TestLedgerScanner:
    """Tests for LedgerScanner.scan."""

    @pytest.mark.asyncio
    async def test_clean_ledger(self, ledger: OperationLedger) -> None:
        """Test a ledger with only fresh or terminal entries is clean."""
        await ledger.begin("S1", OperationKind.RETIRE, RETIRE_STEPS)
        await ledger.begin("S2", OperationKind.RETIRE, RETIRE_STEPS)
        await ledger.complete("S2")

        report = await LedgerScanner(ledger, stale_after_minutes=30).scan()

        assert report.is_clean
        assert report.scanned_at is not None

    @pytest.mark.asyncio
    async def test_reports_attention_and_stale(self, ledger_database, caplog) -> None:
        """Test both kinds are found, each once, and logged."""
        old = utc_now() - timedelta(hours=3)
        old_ledger = OperationLedger(ledger_database, clock=lambda: old)
        await old_ledger.begin("stuck-retire", OperationKind.RETIRE, RETIRE_STEPS)
        await old_ledger.begin("orphan", OperationKind.PROVISION, PROVISION_STEPS)
        await old_ledger.mark_needs_compensation("orphan", "ProfileCreationFailed")
        await old_ledger.escalate("orphan", "ProfileCreationFailed-CompensationFailed")

        ledger = OperationLedger(ledger_database)
        await ledger.begin("fresh", OperationKind.RETIRE, RETIRE_STEPS)

        with caplog.at_level(logging.WARNING, logger="src.domains.lifecycle.scanner"):
            report = await LedgerScanner(ledger, stale_after_minutes=30).scan()

        assert [op.operation_id for op in report.needs_attention] == ["orphan"]
        assert [op.operation_id for op in report.stale] == ["stuck-retire"]

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(errors) == 1
        assert "orphan" in errors[0].getMessage()
        assert len(warnings) == 1
        assert "stuck-retire" in warnings[0].getMessage()


def _later() -> datetime:
    return utc_now() + timedelta(hours=1)


async def _fail_on_outage(orchestrator, ledger, identity_store, request) -> str:
    """Provision while the identity provider is down; return the reserved id."""
    identity_store.fail("create_account", *(StoreUnavailableError("unavailable") for _ in range(3)))
    with pytest.raises(IdentityCreationFailedError):
        await orchestrator.provision_student(request)
    return (await ledger.get(request.request_id)).proposed_account_id


class TestFailedIdentityCheck:
    """Tests for accounts created after their Provision already failed."""

    @pytest.mark.asyncio
    async def test_late_account_needs_attention(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: OperationLedger,
        identity_store,
        provision_request: ProvisionStudentRequest,
        caplog,
    ) -> None:
        """Test an account that landed after the failure is flagged and removable."""
        account_id = await _fail_on_outage(orchestrator, ledger, identity_store, provision_request)
        identity_store.accounts[account_id] = StudentIdentity(account_id, "late@x.com", "Late")

        scanner = LedgerScanner(ledger, stale_after_minutes=30, clock=_later, identity_store=identity_store)
        with caplog.at_level(logging.ERROR, logger="src.domains.lifecycle.scanner"):
            report = await scanner.scan()

        assert [op.operation_id for op in report.needs_attention] == [provision_request.request_id]
        assert report.needs_attention[0].failure_reason == FailureReason.IDENTITY_ORPHANED.value
        assert account_id in caplog.text

        operation = await orchestrator.retry_compensation(provision_request.request_id)

        assert operation.status == OperationStatus.FAILED
        assert operation.failure_reason == FailureReason.IDENTITY_COMPENSATED.value
        assert identity_store.accounts == {}
        assert (await scanner.scan()).is_clean

    @pytest.mark.asyncio
    async def test_absent_account_checked_once(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: OperationLedger,
        identity_store,
        provision_request: ProvisionStudentRequest,
    ) -> None:
        """Test a failure that left no account is confirmed and not looked up again."""
        await _fail_on_outage(orchestrator, ledger, identity_store, provision_request)
        lookups = identity_store.call_count("get_account")

        scanner = LedgerScanner(ledger, stale_after_minutes=30, clock=_later, identity_store=identity_store)
        assert (await scanner.scan()).is_clean
        assert identity_store.call_count("get_account") == lookups + 1

        assert (await scanner.scan()).is_clean
        assert identity_store.call_count("get_account") == lookups + 1
        assert (await ledger.get(provision_request.request_id)).retryable is True

    @pytest.mark.asyncio
    async def test_recent_failures_left_alone(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: OperationLedger,
        identity_store,
        provision_request: ProvisionStudentRequest,
    ) -> None:
        """Test a failure younger than the threshold is not looked up yet."""
        await _fail_on_outage(orchestrator, ledger, identity_store, provision_request)
        lookups = identity_store.call_count("get_account")

        await LedgerScanner(ledger, stale_after_minutes=30, identity_store=identity_store).scan()

        assert identity_store.call_count("get_account") == lookups

    @pytest.mark.asyncio
    async def test_unavailable_provider_checked_next_scan(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: OperationLedger,
        identity_store,
        provision_request: ProvisionStudentRequest,
    ) -> None:
        """Test a failed lookup leaves the entry for the next scan."""
        account_id = await _fail_on_outage(orchestrator, ledger, identity_store, provision_request)
        identity_store.accounts[account_id] = StudentIdentity(account_id, "late@x.com", "Late")
        identity_store.fail("get_account", StoreUnavailableError("unavailable"))

        scanner = LedgerScanner(ledger, stale_after_minutes=30, clock=_later, identity_store=identity_store)
        assert (await scanner.scan()).is_clean

        report = await scanner.scan()
        assert [op.operation_id for op in report.needs_attention] == [provision_request.request_id]
