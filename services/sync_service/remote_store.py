"""Remote document store clients.

Documents are partitioned per user. Each partition holds a pages collection
and a parallel tombstones collection recording deletions.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from shared.errors import RemoteStoreError
from shared.models import Tombstone, decode_page_cursor, parse_timestamp

logger = logging.getLogger(__name__)


class RemoteStore(ABC):
    """Interface of the remote document store used by the sync engine."""

    @abstractmethod
    async def query_pages(
        self,
        user_id: str,
        modified_after: str,
        limit: int,
        start_after: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Query page documents modified after a timestamp.

        Results are ordered by ``(lastModified, id)``. ``start_after`` is a
        resume token from :func:`encode_page_cursor`; only documents ordered
        strictly after that position are returned. A malformed token is ignored.
        """

    @abstractmethod
    async def get_page(self, user_id: str, page_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single page document."""

    @abstractmethod
    async def batch_write(
        self,
        user_id: str,
        upserts: Optional[List[Dict[str, Any]]] = None,
        deletes: Optional[List[str]] = None,
        tombstones: Optional[List[Tombstone]] = None,
    ) -> None:
        """Apply upserts, deletes and tombstones atomically."""

    @abstractmethod
    async def put_tombstone(self, user_id: str, tombstone: Tombstone) -> None:
        """Record a single deletion."""

    @abstractmethod
    async def query_tombstones(self, user_id: str, deleted_after: str) -> List[Tombstone]:
        """Get tombstones created after a timestamp, oldest first."""

    async def close(self) -> None:
        """Release any held resources."""


class InMemoryRemoteStore(RemoteStore):
    """Remote store kept in process memory.

    Used for development and tests. ``fail_next(operation, times)`` makes the
    next calls of an operation raise :class:`RemoteStoreError`.
    """

    def __init__(self):
        self._pages: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._tombstones: Dict[str, List[Tombstone]] = {}
        self._failures: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self.calls: List[str] = []

    def fail_next(self, operation: str, times: int = 1) -> None:
        self._failures[operation] = self._failures.get(operation, 0) + times

    def _check_failure(self, operation: str) -> None:
        self.calls.append(operation)
        remaining = self._failures.get(operation, 0)
        if remaining:
            self._failures[operation] = remaining - 1
            raise RemoteStoreError(f"Injected failure for {operation}", status_code=503)

    def documents(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        """Direct view of a user's page documents."""
        return self._pages.setdefault(user_id, {})

    def tombstones(self, user_id: str) -> List[Tombstone]:
        return self._tombstones.setdefault(user_id, [])

    @staticmethod
    def _sort_key(document: Dict[str, Any]):
        return (parse_timestamp(document.get("lastModified")), document["id"])

    async def query_pages(self, user_id, modified_after, limit, start_after=None):
        self._check_failure("query_pages")
        threshold = parse_timestamp(modified_after)
        docs = self.documents(user_id)
        matching = sorted(
            (d for d in docs.values() if parse_timestamp(d.get("lastModified")) > threshold),
            key=self._sort_key,
        )
        cursor = decode_page_cursor(start_after)
        if cursor is not None:
            matching = [d for d in matching if self._sort_key(d) > cursor]
        return [copy.deepcopy(d) for d in matching[:limit]]

    async def get_page(self, user_id, page_id):
        self._check_failure("get_page")
        document = self.documents(user_id).get(page_id)
        return copy.deepcopy(document) if document is not None else None

    async def batch_write(self, user_id, upserts=None, deletes=None, tombstones=None):
        async with self._lock:
            self._check_failure("batch_write")
            docs = self.documents(user_id)
            for document in upserts or []:
                docs[document["id"]] = copy.deepcopy(document)
            for page_id in deletes or []:
                docs.pop(page_id, None)
            self.tombstones(user_id).extend(tombstones or [])

    async def put_tombstone(self, user_id, tombstone):
        self._check_failure("put_tombstone")
        self.tombstones(user_id).append(tombstone)

    async def query_tombstones(self, user_id, deleted_after):
        self._check_failure("query_tombstones")
        threshold = parse_timestamp(deleted_after)
        matching = [t for t in self.tombstones(user_id) if parse_timestamp(t.deleted_at) > threshold]
        return sorted(matching, key=lambda t: parse_timestamp(t.deleted_at))


class HttpRemoteStore(RemoteStore):
    """Remote store reached over a JSON HTTP API."""

    def __init__(self, base_url: str, api_token: Optional[str] = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the HTTP client.

        Args:
            base_url: Root URL of the document API
            api_token: Optional bearer token
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise RemoteStoreError(
                f"{action} failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

    async def query_pages(self, user_id, modified_after, limit, start_after=None):
        params = {"modifiedAfter": modified_after, "limit": limit}
        cursor = decode_page_cursor(start_after)
        if cursor is not None:
            params["startAfterModified"] = cursor[0].isoformat()
            params["startAfterId"] = cursor[1]
        response = await self.client.get(f"/users/{user_id}/pages", params=params)
        self._raise_for_status(response, "Page query")
        return response.json().get("documents", [])

    async def get_page(self, user_id, page_id):
        response = await self.client.get(f"/users/{user_id}/pages/{page_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"Fetch of page {page_id}")
        return response.json()

    async def batch_write(self, user_id, upserts=None, deletes=None, tombstones=None):
        payload = {
            "upserts": upserts or [],
            "deletes": deletes or [],
            "tombstones": [t.to_document() for t in tombstones or []],
        }
        response = await self.client.post(f"/users/{user_id}/pages:batchWrite", json=payload)
        self._raise_for_status(response, "Batch write")

    async def put_tombstone(self, user_id, tombstone):
        response = await self.client.put(
            f"/users/{user_id}/deletedPages/{tombstone.page_id}",
            json=tombstone.to_document(),
        )
        self._raise_for_status(response, f"Tombstone for {tombstone.page_id}")

    async def query_tombstones(self, user_id, deleted_after):
        response = await self.client.get(
            f"/users/{user_id}/deletedPages",
            params={"deletedAfter": deleted_after},
        )
        self._raise_for_status(response, "Tombstone query")
        return [Tombstone.from_document(d) for d in response.json().get("documents", [])]

    async def close(self) -> None:
        await self.client.aclose()
