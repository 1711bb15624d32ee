# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Identity store backed by Firebase Authentication.

firebase_admin is synchronous, so every call runs in the default thread
pool. Provider exceptions are translated to the StoreError family at
this boundary and never reach the orchestrator.
"""

import asyncio
import logging
from collections.abc import Callable
from functools import partial
from typing import Any, TypeVar

import firebase_admin
from firebase_admin import auth
from firebase_admin import exceptions as firebase_exceptions

from src.domains.lifecycle.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InvalidCredentialError,
    StoreError,
    StoreUnavailableError,
)
from src.domains.lifecycle.types import StudentIdentity

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Provider errors that say nothing about whether the request took effect
_TRANSIENT_ERRORS = (
    firebase_exceptions.UnavailableError,
    firebase_exceptions.DeadlineExceededError,
    firebase_exceptions.InternalError,
    firebase_exceptions.UnknownError,
    firebase_exceptions.ResourceExhaustedError,
)


class FirebaseIdentityStore:
    """IdentityStore implementation on Firebase Authentication."""

    def __init__(self, app: firebase_admin.App) -> None:
        self._app = app

    async def create_account(
        self,
        email: str,
        password: str,
        display_name: str,
        account_id: str | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "email": email,
            "password": password,
            "display_name": display_name,
            "app": self._app,
        }
        if account_id:
            kwargs["uid"] = account_id

        user = await self._call("create_user", partial(auth.create_user, **kwargs))
        logger.debug("Created Firebase user %s", user.uid)
        return user.uid

    async def delete_account(self, account_id: str) -> None:
        await self._call("delete_user", partial(auth.delete_user, account_id, app=self._app))

    async def get_account(self, account_id: str) -> StudentIdentity | None:
        try:
            user = await self._call("get_user", partial(auth.get_user, account_id, app=self._app))
        except AccountNotFoundError:
            return None
        return StudentIdentity(
            account_id=user.uid,
            email=user.email,
            display_name=user.display_name,
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a firebase_admin call off the event loop, translating errors."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func)
        except (auth.EmailAlreadyExistsError, auth.UidAlreadyExistsError) as e:
            raise AccountAlreadyExistsError(str(e)) from e
        except auth.UserNotFoundError as e:
            raise AccountNotFoundError(str(e)) from e
        except firebase_exceptions.InvalidArgumentError as e:
            raise InvalidCredentialError(str(e)) from e
        except _TRANSIENT_ERRORS as e:
            logger.warning("Firebase %s unavailable: %s", operation, e)
            raise StoreUnavailableError(f"Identity provider unavailable: {e}") from e
        except firebase_exceptions.FirebaseError as e:
            raise StoreError(f"Identity provider rejected {operation}: {e}") from e
        except ValueError as e:
            # Raised client-side for malformed emails, short passwords, bad uids
            raise InvalidCredentialError(str(e)) from e
