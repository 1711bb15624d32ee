# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain types for the student identity lifecycle.

These are plain dataclasses so the orchestrator, the ledger and the
store adapters can exchange them without depending on the HTTP schemas
in src.models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class OperationKind(str, Enum):
    """Kind of lifecycle operation recorded in the ledger."""

    PROVISION = "provision"
    RETIRE = "retire"


class OperationStatus(str, Enum):
    """Ledger status of a lifecycle operation.

    COMPLETED and FAILED are terminal. NEEDS_COMPENSATION is not: it is
    the state an operator has to resolve.
    """

    PENDING = "pending"
    NEEDS_COMPENSATION = "needs_compensation"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.FAILED)


class StepStatus(str, Enum):
    """Status of a single step inside an operation."""

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Failure reasons written to the ledger."""

    IDENTITY_CREATION_FAILED = "IdentityCreationFailed"
    IDENTITY_ORPHANED = "IdentityCreationFailed-Orphaned"
    IDENTITY_COMPENSATED = "IdentityCreationFailed-Compensated"
    PROFILE_CREATION_FAILED = "ProfileCreationFailed"
    PROFILE_COMPENSATED = "ProfileCreationFailed-Compensated"
    COMPENSATION_FAILED = "ProfileCreationFailed-CompensationFailed"
    RETIRE_STEP_FAILED = "RetireStepFailed"


class ProvisionStep(str, Enum):
    """Ordered steps of a Provision operation."""

    IDENTITY = "identity"
    PROFILE = "profile"


class RetireStep(str, Enum):
    """Ordered steps of a Retire operation, dependents first."""

    FEES = "fees"
    RESULTS = "results"
    PROFILE = "profile"
    IDENTITY = "identity"


PROVISION_STEPS: tuple[str, ...] = tuple(step.value for step in ProvisionStep)
RETIRE_STEPS: tuple[str, ...] = tuple(step.value for step in RetireStep)


class Collections:
    """Document store collection names."""

    STUDENTS = "students"
    FEES = "fees"
    ACADEMIC_RESULTS = "academicResults"


# Foreign key carried by fee and academic result documents
STUDENT_ID_FIELD = "studentId"


@dataclass(frozen=True)
class StudentIdentity:
    """Identity-provider account of a student."""

    account_id: str
    email: str | None
    display_name: str | None = None


@dataclass(frozen=True)
class ProvisionCommand:
    """A provisioning request that passed the validation gate."""

    email: str
    password: str
    first_name: str
    last_name: str
    class_id: str | None = None
    request_id: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def ledger_payload(self) -> dict[str, Any]:
        """Request fields persisted with the ledger entry.

        The password is deliberately absent: the ledger is an audit
        trail and must never hold credentials.
        """
        return {
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "class_id": self.class_id,
        }


@dataclass(frozen=True)
class RetireCommand:
    """A retirement request that passed the validation gate."""

    account_id: str
    operation_id: str


@dataclass(frozen=True)
class StepState:
    """Snapshot of one step of an operation."""

    name: str
    status: StepStatus
    position: int
    updated_at: datetime | None = None


@dataclass(frozen=True)
class LifecycleOperation:
    """Snapshot of a ledger entry.

    Attributes:
        operation_id: Idempotency key.
        kind: Provision or Retire.
        status: Current ledger status.
        steps: Steps in execution order.
        target_account_id: Account id, set once the identity step is
            done for Provision, known up front for Retire.
        payload: Request fields recorded at begin time.
        failure_reason: Last recorded failure reason.
        failed_step: Step that caused the last failure.
        retryable: Whether a failed entry may be reopened.
        attempt_count: Number of times the entry was (re)started.
        claimed_by: Runner currently owning the entry.
        claim_expires_at: End of the current claim lease.
        created_at: When the entry was begun.
        updated_at: Last transition time.
        completed_at: When the entry reached a terminal state.
    """

    operation_id: str
    kind: OperationKind
    status: OperationStatus
    steps: tuple[StepState, ...]
    target_account_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    failure_reason: str | None = None
    failed_step: str | None = None
    retryable: bool = False
    attempt_count: int = 1
    claimed_by: str | None = None
    claim_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def done_steps(self) -> set[str]:
        return {step.name for step in self.steps if step.status == StepStatus.DONE}

    def is_step_done(self, step_name: str) -> bool:
        return step_name in self.done_steps

    @property
    def proposed_account_id(self) -> str | None:
        """Account id reserved for a Provision before the identity call."""
        return self.payload.get("proposed_account_id")


@dataclass(frozen=True)
class LifecycleEvent:
    """One row of an operation's audit trail."""

    operation_id: str
    event: str
    detail: str | None
    occurred_at: datetime | None


@dataclass(frozen=True)
class ProvisionOutcome:
    """Successful result of provisioning a student."""

    account_id: str
    operation_id: str
    resumed: bool = False


@dataclass(frozen=True)
class RetireOutcome:
    """Successful result of retiring a student.

    Attributes:
        account_id: Retired account.
        operation_id: Ledger entry of the retirement.
        already_retired: True if the entry was complete before this call.
        deleted: Documents removed per step during this call.
    """

    account_id: str
    operation_id: str
    already_retired: bool = False
    deleted: dict[str, int] = field(default_factory=dict)
