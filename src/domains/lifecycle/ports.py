# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Interfaces of the external stores the orchestrator coordinates.

The hosted identity provider and document store are independent
services that fail independently. Adapters implement these protocols
and raise the StoreError family from src.domains.lifecycle.errors.
"""

from typing import Any, Protocol

from src.domains.lifecycle.types import StudentIdentity


class IdentityStore(Protocol):
    """Identity-provider accounts keyed by an opaque account id."""

    async def create_account(
        self,
        email: str,
        password: str,
        display_name: str,
        account_id: str | None = None,
    ) -> str:
        """Create an account and return its id.

        Raises:
            AccountAlreadyExistsError: Email or account id already taken.
            InvalidCredentialError: Email or password rejected.
            StoreUnavailableError: Provider unreachable.
        """
        ...

    async def delete_account(self, account_id: str) -> None:
        """Delete an account.

        Raises:
            AccountNotFoundError: No such account.
            StoreUnavailableError: Provider unreachable.
        """
        ...

    async def get_account(self, account_id: str) -> StudentIdentity | None:
        """Return the account, or None if it does not exist.

        Raises:
            StoreUnavailableError: Provider unreachable.
        """
        ...


class DocumentStore(Protocol):
    """Schema-less document collections."""

    async def put_document(self, collection: str, document_id: str, fields: dict[str, Any]) -> None:
        """Create or overwrite a document.

        Raises:
            StoreUnavailableError: Store unreachable.
        """
        ...

    async def delete_where(self, collection: str, field: str, value: Any) -> int:
        """Delete every document whose field equals value.

        Returns:
            Number of documents deleted, zero when nothing matched.

        Raises:
            StoreUnavailableError: Store unreachable.
        """
        ...

    async def delete_document(self, collection: str, document_id: str) -> None:
        """Delete a single document.

        Raises:
            DocumentNotFoundError: No such document.
            StoreUnavailableError: Store unreachable.
        """
        ...
