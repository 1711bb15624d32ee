# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Validation gate for lifecycle requests.

Pure functions: no I/O, no clock, no randomness. Every problem found is
reported at once so the admin console can flag all fields together.

Example:
    >>> command = validate_provision_request(
    ...     ProvisionStudentRequest(
    ...         email="a@x.com", password="secret1", first_name="Ana", last_name="Lee"
    ...     )
    ... )
    >>> command.display_name
    'Ana Lee'
"""

from email_validator import EmailNotValidError, validate_email

from src.domains.lifecycle.errors import InvalidInputError
from src.domains.lifecycle.types import ProvisionCommand, RetireCommand
from src.models.lifecycle import ProvisionStudentRequest, RetireStudentRequest

MIN_PASSWORD_LENGTH = 6


def _normalize_email(raw: str) -> str:
    """Return the normalized address.

    Raises:
        EmailNotValidError: If the address is not syntactically valid.
    """
    validated = validate_email(raw.strip(), check_deliverability=False)
    return validated.normalized.lower()


def validate_provision_request(request: ProvisionStudentRequest) -> ProvisionCommand:
    """Check a provisioning request and normalize it.

    Args:
        request: Raw provisioning request.

    Returns:
        ProvisionCommand with trimmed names and a normalized email.

    Raises:
        InvalidInputError: If any field is invalid.
    """
    problems: dict[str, str] = {}

    email = ""
    if not request.email.strip():
        problems["email"] = "is required"
    else:
        try:
            email = _normalize_email(request.email)
        except EmailNotValidError as e:
            problems["email"] = str(e)

    if len(request.password) < MIN_PASSWORD_LENGTH:
        problems["password"] = f"must be at least {MIN_PASSWORD_LENGTH} characters"

    first_name = request.first_name.strip()
    if not first_name:
        problems["first_name"] = "is required"

    last_name = request.last_name.strip()
    if not last_name:
        problems["last_name"] = "is required"

    request_id = request.request_id.strip() if request.request_id else None
    if request.request_id is not None and not request_id:
        problems["request_id"] = "must not be blank"

    if problems:
        raise InvalidInputError(problems)

    class_id = request.class_id.strip() if request.class_id else None

    return ProvisionCommand(
        email=email,
        password=request.password,
        first_name=first_name,
        last_name=last_name,
        class_id=class_id or None,
        request_id=request_id,
    )


def validate_retire_request(request: RetireStudentRequest) -> RetireCommand:
    """Check a retirement request.

    The operation id defaults to the account id, which makes retiring the
    same student twice naturally idempotent.

    Raises:
        InvalidInputError: If the account id is empty.
    """
    account_id = request.account_id.strip()
    if not account_id:
        raise InvalidInputError({"account_id": "is required"})

    operation_id = request.operation_id.strip() if request.operation_id else ""
    return RetireCommand(account_id=account_id, operation_id=operation_id or account_id)
