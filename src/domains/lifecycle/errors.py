# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Exceptions for the student lifecycle domain.

Three families live here:

- LifecycleError: the only errors the orchestrator lets callers see.
- LedgerError: raised by the operation ledger on bad transitions.
- StoreError: raised by identity/document store adapters. The
  orchestrator catches these at every step and translates them.
"""

from typing import Any


class LifecycleError(Exception):
    """Base exception for lifecycle operations.

    Attributes:
        error_kind: Stable machine-readable error kind.
        message: Human-readable description.
        operation_id: Ledger entry the error belongs to, if any.
        needs_attention: True if an operator has to step in.
        retryable: True if resubmitting the same operation id may succeed.
    """

    error_kind = "LifecycleError"
    needs_attention = False
    retryable = False

    def __init__(self, message: str, operation_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.operation_id = operation_id

    def to_dict(self) -> dict[str, Any]:
        """Convert to the error payload exposed to the admin console."""
        return {
            "error_kind": self.error_kind,
            "message": self.message,
            "operation_id": self.operation_id,
            "needs_attention": self.needs_attention,
            "retryable": self.retryable,
        }


class InvalidInputError(LifecycleError):
    """Raised by the validation gate. Nothing was written anywhere."""

    error_kind = "InvalidInput"

    def __init__(self, problems: dict[str, str]) -> None:
        summary = "; ".join(f"{name}: {problem}" for name, problem in problems.items())
        super().__init__(f"Invalid input: {summary}")
        self.problems = problems

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["problems"] = dict(self.problems)
        return data


class IdentityCreationFailedError(LifecycleError):
    """Raised when the identity provider refused to create the account."""

    error_kind = "IdentityCreationFailed"

    def __init__(
        self,
        message: str,
        operation_id: str | None = None,
        already_exists: bool = False,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, operation_id)
        self.already_exists = already_exists
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["already_exists"] = self.already_exists
        return data


class ProfileCreationCompensatedError(LifecycleError):
    """Raised when the profile write failed and the identity was removed."""

    error_kind = "ProfileCreationFailed-Compensated"


class CompensationFailedError(LifecycleError):
    """Raised when the profile write failed and so did the cleanup.

    The identity account is orphaned until an operator resolves the
    ledger entry.
    """

    error_kind = "ProfileCreationFailed-CompensationFailed"
    needs_attention = True


class RetireStepFailedError(LifecycleError):
    """Raised when a retirement step failed. Resubmit the same operation id."""

    error_kind = "RetireStepFailed"
    retryable = True

    def __init__(self, step_name: str, message: str, operation_id: str | None = None) -> None:
        super().__init__(message, operation_id)
        self.step_name = step_name

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["step"] = self.step_name
        return data


class DuplicateOperationError(LifecycleError):
    """Raised when another runner owns the operation, or the id is taken.

    Informational: poll the existing operation instead of resubmitting.
    """

    error_kind = "DuplicateOperation"


# =============================================================================
# Ledger errors
# =============================================================================


class LedgerError(Exception):
    """Base exception for operation ledger errors."""

    pass


class OperationNotFoundError(LedgerError):
    """Raised when no ledger entry exists for the operation id."""

    error_kind = "NotFound"

    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Lifecycle operation not found: {operation_id}")
        self.operation_id = operation_id


class AlreadyTerminalError(LedgerError):
    """Raised when a terminal entry is asked to transition again.

    Correct callers never trigger this, so seeing it means a bug.
    """

    def __init__(self, operation_id: str, status: str) -> None:
        super().__init__(f"Lifecycle operation {operation_id} is already {status}")
        self.operation_id = operation_id
        self.status = status


class ClaimLostError(LedgerError):
    """Raised when a runner transitions an entry it no longer owns.

    The lease ran out and another runner claimed the entry. The losing
    runner must stop without touching the stores again.
    """

    def __init__(self, operation_id: str, owner: str) -> None:
        super().__init__(f"Runner {owner} no longer owns lifecycle operation {operation_id}")
        self.operation_id = operation_id
        self.owner = owner


class InvalidTransitionError(LedgerError):
    """Raised when a transition is not allowed from the current status."""

    def __init__(self, operation_id: str, status: str, transition: str) -> None:
        super().__init__(
            f"Cannot {transition} lifecycle operation {operation_id} in status {status}"
        )
        self.operation_id = operation_id
        self.status = status
        self.transition = transition


# =============================================================================
# Store errors
# =============================================================================


class StoreError(Exception):
    """Base exception for identity and document store failures."""

    pass


class StoreUnavailableError(StoreError):
    """Raised when a store could not be reached or timed out.

    A timeout does not prove the remote effect did not happen.
    """

    pass


class AccountAlreadyExistsError(StoreError):
    """Raised when the email or account id is already registered."""

    pass


class InvalidCredentialError(StoreError):
    """Raised when the identity provider rejects the email or password."""

    pass


class AccountNotFoundError(StoreError):
    """Raised when the identity account does not exist."""

    pass


class DocumentNotFoundError(StoreError):
    """Raised when the document does not exist."""

    pass
