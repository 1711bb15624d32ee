# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Translation of lifecycle errors to HTTP responses.

The response body carries the error's to_dict() payload, so the admin
console can tell which step failed and whether the failure needs an
operator.
"""

from fastapi import HTTPException, status

from src.domains.lifecycle.errors import (
    AlreadyTerminalError,
    CompensationFailedError,
    DuplicateOperationError,
    IdentityCreationFailedError,
    InvalidInputError,
    InvalidTransitionError,
    LedgerError,
    LifecycleError,
    OperationNotFoundError,
    ProfileCreationCompensatedError,
    RetireStepFailedError,
)

_STATUS_BY_ERROR: tuple[tuple[type[Exception], int], ...] = (
    (InvalidInputError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ProfileCreationCompensatedError, status.HTTP_502_BAD_GATEWAY),
    (CompensationFailedError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (RetireStepFailedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DuplicateOperationError, status.HTTP_409_CONFLICT),
)


def status_for(error: LifecycleError | LedgerError) -> int:
    """HTTP status code for a lifecycle or ledger error."""
    if isinstance(error, IdentityCreationFailedError):
        if error.already_exists:
            return status.HTTP_409_CONFLICT
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(error, OperationNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (AlreadyTerminalError, InvalidTransitionError)):
        return status.HTTP_409_CONFLICT

    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: LifecycleError | LedgerError) -> HTTPException:
    """Build the HTTPException for a lifecycle or ledger error."""
    if isinstance(error, LifecycleError):
        detail = error.to_dict()
    else:
        detail = {
            "error_kind": getattr(error, "error_kind", type(error).__name__),
            "message": str(error),
            "operation_id": getattr(error, "operation_id", None),
            "needs_attention": False,
            "retryable": False,
        }
    return HTTPException(status_code=status_for(error), detail=detail)
