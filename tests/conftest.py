# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

This module provides fixtures used across all test types:
- In-memory identity and document stores with failure injection
- A file-backed SQLite operation ledger per test
- A fully wired LifecycleOrchestrator
"""

from collections import defaultdict
from collections.abc import AsyncGenerator
from typing import Any
from uuid import uuid4

import pytest

from src.domains.lifecycle.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    DocumentNotFoundError,
    StoreUnavailableError,
)
from src.domains.lifecycle.ledger import OperationLedger
from src.domains.lifecycle.orchestrator import LifecycleOrchestrator
from src.domains.lifecycle.retry import RetryPolicy, StepRunner
from src.domains.lifecycle.types import StudentIdentity
from src.infrastructure.database import LedgerDatabase
from src.models.lifecycle import ProvisionStudentRequest


# =============================================================================
# Fake stores
# =============================================================================


class _FailureQueue:
    """Errors queued per call key, raised one per call."""

    def __init__(self) -> None:
        self._queued: dict[str, list[Exception]] = defaultdict(list)

    def add(self, key: str, *errors: Exception) -> None:
        self._queued[key].extend(errors)

    def raise_next(self, *keys: str) -> None:
        for key in keys:
            if self._queued[key]:
                raise self._queued[key].pop(0)


class FakeIdentityStore:
    """In-memory IdentityStore.

    ``fail(method, *errors)`` queues errors raised by the next calls of
    ``method`` before it has any effect. ``lose_create_response()`` makes
    the next create take effect and then report unavailability.
    """

    def __init__(self) -> None:
        self.accounts: dict[str, StudentIdentity] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures = _FailureQueue()
        self._lose_create_responses = 0

    def fail(self, method: str, *errors: Exception) -> None:
        self._failures.add(method, *errors)

    def lose_create_response(self, times: int = 1) -> None:
        self._lose_create_responses += times

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def create_account(
        self,
        email: str,
        password: str,
        display_name: str,
        account_id: str | None = None,
    ) -> str:
        self.calls.append(("create_account", email))
        self._failures.raise_next("create_account")

        account_id = account_id or uuid4().hex
        if account_id in self.accounts or any(a.email == email for a in self.accounts.values()):
            raise AccountAlreadyExistsError(f"{email} already registered")
        self.accounts[account_id] = StudentIdentity(account_id, email, display_name)

        if self._lose_create_responses:
            self._lose_create_responses -= 1
            raise StoreUnavailableError("connection reset after create")
        return account_id

    async def delete_account(self, account_id: str) -> None:
        self.calls.append(("delete_account", account_id))
        self._failures.raise_next("delete_account")
        if account_id not in self.accounts:
            raise AccountNotFoundError(account_id)
        del self.accounts[account_id]

    async def get_account(self, account_id: str) -> StudentIdentity | None:
        self.calls.append(("get_account", account_id))
        self._failures.raise_next("get_account")
        return self.accounts.get(account_id)


class FakeDocumentStore:
    """In-memory DocumentStore.

    Failures are queued per method (``"delete_where"``) or per method and
    collection (``"delete_where:fees"``).
    """

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.calls: list[tuple[str, str, str]] = []
        self._failures = _FailureQueue()

    def fail(self, key: str, *errors: Exception) -> None:
        self._failures.add(key, *errors)

    def add(self, collection: str, document_id: str, fields: dict[str, Any]) -> None:
        self.collections[collection][document_id] = dict(fields)

    def call_count(self, method: str, collection: str | None = None) -> int:
        return sum(
            1
            for name, coll, _ in self.calls
            if name == method and (collection is None or coll == collection)
        )

    async def put_document(self, collection: str, document_id: str, fields: dict[str, Any]) -> None:
        self.calls.append(("put_document", collection, document_id))
        self._failures.raise_next("put_document", f"put_document:{collection}")
        self.collections[collection][document_id] = dict(fields)

    async def delete_where(self, collection: str, field: str, value: Any) -> int:
        self.calls.append(("delete_where", collection, str(value)))
        self._failures.raise_next("delete_where", f"delete_where:{collection}")
        docs = self.collections[collection]
        matching = [doc_id for doc_id, fields in docs.items() if fields.get(field) == value]
        for doc_id in matching:
            del docs[doc_id]
        return len(matching)

    async def delete_document(self, collection: str, document_id: str) -> None:
        self.calls.append(("delete_document", collection, document_id))
        self._failures.raise_next("delete_document", f"delete_document:{collection}")
        if document_id not in self.collections[collection]:
            raise DocumentNotFoundError(f"{collection}/{document_id}")
        del self.collections[collection][document_id]


# =============================================================================
# Store and ledger fixtures
# =============================================================================


@pytest.fixture
def identity_store() -> FakeIdentityStore:
    """Provide an empty in-memory identity store."""
    return FakeIdentityStore()


@pytest.fixture
def document_store() -> FakeDocumentStore:
    """Provide an empty in-memory document store."""
    return FakeDocumentStore()


@pytest.fixture
async def ledger_database(tmp_path) -> AsyncGenerator[LedgerDatabase, None]:
    """Provide an initialized SQLite ledger database in a temp file.

    A file rather than :memory: so concurrent sessions share one database.
    """
    database = LedgerDatabase(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await database.init()
    await database.create_schema()
    yield database
    await database.close()


@pytest.fixture
def ledger(ledger_database: LedgerDatabase) -> OperationLedger:
    """Provide an operation ledger on the test database."""
    return OperationLedger(ledger_database)


@pytest.fixture
def step_runner() -> StepRunner:
    """Provide a step runner with three attempts and no backoff."""
    return StepRunner(
        RetryPolicy(
            max_attempts=3,
            timeout_seconds=1.0,
            backoff_initial_seconds=0,
            backoff_max_seconds=0,
        )
    )


@pytest.fixture
def orchestrator(
    ledger: OperationLedger,
    identity_store: FakeIdentityStore,
    document_store: FakeDocumentStore,
    step_runner: StepRunner,
) -> LifecycleOrchestrator:
    """Provide an orchestrator wired to the fakes and the test ledger."""
    return LifecycleOrchestrator(
        ledger=ledger,
        identity_store=identity_store,
        document_store=document_store,
        step_runner=step_runner,
        claim_lease_seconds=60,
    )


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# =============================================================================
# Helper Fixtures
# =============================================================================


@pytest.fixture
def provision_request() -> ProvisionStudentRequest:
    """Provide a valid provisioning request."""
    return ProvisionStudentRequest(
        email="ana.lee@school.org",
        password="secret1",
        first_name="Ana",
        last_name="Lee",
        class_id="4A",
        request_id="req-ana-lee",
    )


@pytest.fixture
def sample_account_id() -> str:
    """Provide a sample account id."""
    return "S1"
