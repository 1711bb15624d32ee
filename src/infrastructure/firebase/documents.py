# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Document store backed by Cloud Firestore.

Query deletes are committed in batches of at most BATCH_LIMIT writes,
the Firestore per-batch maximum. A delete_where interrupted between
batches leaves the remaining documents in place; running it again
deletes them.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

import firebase_admin
from firebase_admin import firestore
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1.base_query import FieldFilter

from src.domains.lifecycle.errors import DocumentNotFoundError, StoreError, StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Firestore batch limit is 500 operations
BATCH_LIMIT = 500

_TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    google_exceptions.TooManyRequests,
    google_exceptions.Aborted,
    google_exceptions.RetryError,
)


class FirestoreDocumentStore:
    """DocumentStore implementation on Cloud Firestore."""

    def __init__(self, app: firebase_admin.App | None = None, client: Any = None) -> None:
        """Initialize the store.

        Args:
            app: Firebase app handle; used to build the client.
            client: Ready Firestore client, takes precedence over ``app``.
        """
        self._client = client if client is not None else firestore.client(app=app)

    async def put_document(self, collection: str, document_id: str, fields: dict[str, Any]) -> None:
        doc_ref = self._client.collection(collection).document(document_id)
        await self._call(f"set {collection}/{document_id}", lambda: doc_ref.set(fields))

    async def delete_where(self, collection: str, field: str, value: Any) -> int:
        query = self._client.collection(collection).where(filter=FieldFilter(field, "==", value))
        return await self._call(f"delete {collection} where {field}", lambda: self._delete_matching(query))

    async def delete_document(self, collection: str, document_id: str) -> None:
        doc_ref = self._client.collection(collection).document(document_id)

        def delete() -> None:
            if not doc_ref.get().exists:
                raise DocumentNotFoundError(f"{collection}/{document_id} does not exist")
            doc_ref.delete()

        await self._call(f"delete {collection}/{document_id}", delete)

    def _delete_matching(self, query: Any) -> int:
        deleted = 0
        batch = self._client.batch()
        batch_count = 0

        for snapshot in query.stream():
            batch.delete(snapshot.reference)
            batch_count += 1
            if batch_count >= BATCH_LIMIT:
                batch.commit()
                deleted += batch_count
                batch = self._client.batch()
                batch_count = 0

        if batch_count > 0:
            batch.commit()
            deleted += batch_count

        return deleted

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a blocking Firestore call off the event loop, translating errors."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func)
        except google_exceptions.NotFound as e:
            raise DocumentNotFoundError(str(e)) from e
        except _TRANSIENT_ERRORS as e:
            logger.warning("Firestore %s unavailable: %s", operation, e)
            raise StoreUnavailableError(f"Document store unavailable: {e}") from e
        except google_exceptions.GoogleAPIError as e:
            raise StoreError(f"Document store rejected {operation}: {e}") from e
