# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the lifecycle validation gate."""

import pytest

from src.domains.lifecycle.errors import InvalidInputError
from src.domains.lifecycle.validation import (
    validate_provision_request,
    validate_retire_request,
)
from src.models.lifecycle import ProvisionStudentRequest, RetireStudentRequest


def _request(**overrides) -> ProvisionStudentRequest:
    fields = {
        "email": "a@x.com",
        "password": "secret1",
        "first_name": "Ana",
        "last_name": "Lee",
    }
    fields.update(overrides)
    return ProvisionStudentRequest(**fields)


class TestValidateProvisionRequest:
    """Tests for validate_provision_request."""

    def test_valid_request_is_normalized(self) -> None:
        """Test names are trimmed and the email lowercased."""
        command = validate_provision_request(
            _request(email="  Ana.Lee@X.COM ", first_name=" Ana ", last_name="Lee  ", class_id=" 4A ")
        )

        assert command.email == "ana.lee@x.com"
        assert command.first_name == "Ana"
        assert command.last_name == "Lee"
        assert command.display_name == "Ana Lee"
        assert command.class_id == "4A"
        assert command.request_id is None

    def test_password_not_in_ledger_payload(self) -> None:
        """Test the ledger payload never carries the password."""
        command = validate_provision_request(_request())

        payload = command.ledger_payload()

        assert "password" not in payload
        assert "secret1" not in payload.values()

    @pytest.mark.parametrize("email", ["not-an-email", "a@", "@x.com", "a b@x.com"])
    def test_rejects_malformed_email(self, email: str) -> None:
        """Test syntactically invalid addresses are rejected."""
        with pytest.raises(InvalidInputError) as exc_info:
            validate_provision_request(_request(email=email))

        assert "email" in exc_info.value.problems

    def test_rejects_short_password(self) -> None:
        """Test passwords shorter than six characters are rejected."""
        with pytest.raises(InvalidInputError) as exc_info:
            validate_provision_request(_request(password="12345"))

        assert set(exc_info.value.problems) == {"password"}

    def test_accepts_six_character_password(self) -> None:
        """Test the minimum password length is inclusive."""
        command = validate_provision_request(_request(password="123456"))

        assert command.password == "123456"

    def test_reports_every_problem_at_once(self) -> None:
        """Test all invalid fields are reported together."""
        with pytest.raises(InvalidInputError) as exc_info:
            validate_provision_request(
                ProvisionStudentRequest(email="", password="", first_name=" ", last_name="")
            )

        assert set(exc_info.value.problems) == {"email", "password", "first_name", "last_name"}
        assert exc_info.value.to_dict()["error_kind"] == "InvalidInput"

    def test_rejects_blank_request_id(self) -> None:
        """Test an explicit but blank idempotency key is rejected."""
        with pytest.raises(InvalidInputError) as exc_info:
            validate_provision_request(_request(request_id="   "))

        assert "request_id" in exc_info.value.problems

    def test_is_deterministic(self) -> None:
        """Test the same input always yields the same command."""
        request = _request(request_id="r-1")

        assert validate_provision_request(request) == validate_provision_request(request)


class TestValidateRetireRequest:
    """Tests for validate_retire_request."""

    def test_operation_id_defaults_to_account_id(self) -> None:
        """Test the account id is the default idempotency key."""
        command = validate_retire_request(RetireStudentRequest(account_id=" S1 "))

        assert command.account_id == "S1"
        assert command.operation_id == "S1"

    def test_explicit_operation_id_kept(self) -> None:
        """Test an explicit operation id wins over the default."""
        command = validate_retire_request(RetireStudentRequest(account_id="S1", operation_id="retire-S1-2"))

        assert command.operation_id == "retire-S1-2"

    def test_rejects_empty_account_id(self) -> None:
        """Test an empty account id is rejected."""
        with pytest.raises(InvalidInputError) as exc_info:
            validate_retire_request(RetireStudentRequest(account_id="  "))

        assert exc_info.value.problems == {"account_id": "is required"}
