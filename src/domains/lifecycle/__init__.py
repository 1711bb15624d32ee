# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Student identity lifecycle domain.

Provisioning creates an identity-provider account and then a profile
document; retirement deletes a student's fees, results, profile and
account. The operation ledger records every operation so that retries
resume instead of repeating work.

The orchestrator and validation gate live in their own modules
(src.domains.lifecycle.orchestrator, src.domains.lifecycle.validation)
because they depend on the API schemas in src.models.
"""

from src.domains.lifecycle.types import (
    PROVISION_STEPS,
    RETIRE_STEPS,
    Collections,
    FailureReason,
    LifecycleEvent,
    LifecycleOperation,
    OperationKind,
    OperationStatus,
    ProvisionOutcome,
    RetireOutcome,
    StepStatus,
    StudentIdentity,
)
from src.domains.lifecycle.errors import (
    CompensationFailedError,
    DuplicateOperationError,
    IdentityCreationFailedError,
    InvalidInputError,
    LedgerError,
    LifecycleError,
    OperationNotFoundError,
    ProfileCreationCompensatedError,
    RetireStepFailedError,
    StoreError,
    StoreUnavailableError,
)
from src.domains.lifecycle.ports import DocumentStore, IdentityStore
from src.domains.lifecycle.ledger import OperationLedger
from src.domains.lifecycle.retry import RetryPolicy, StepRunner
from src.domains.lifecycle.scanner import LedgerScanner, ScanReport

__all__ = [
    "PROVISION_STEPS",
    "RETIRE_STEPS",
    "Collections",
    "CompensationFailedError",
    "DocumentStore",
    "DuplicateOperationError",
    "FailureReason",
    "IdentityCreationFailedError",
    "IdentityStore",
    "InvalidInputError",
    "LedgerError",
    "LedgerScanner",
    "LifecycleError",
    "LifecycleEvent",
    "LifecycleOperation",
    "OperationKind",
    "OperationLedger",
    "OperationNotFoundError",
    "OperationStatus",
    "ProfileCreationCompensatedError",
    "ProvisionOutcome",
    "RetireOutcome",
    "RetireStepFailedError",
    "RetryPolicy",
    "ScanReport",
    "StepRunner",
    "StepStatus",
    "StoreError",
    "StoreUnavailableError",
    "StudentIdentity",
]
