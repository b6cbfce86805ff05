"""Bounded diagnostic log of sync errors."""

import logging
from collections import OrderedDict
from typing import List, Optional

from shared.db_operations import LocalStore
from shared.models import SyncErrorRecord, parse_timestamp, utcnow_iso

logger = logging.getLogger(__name__)

SYNC_ERROR_LOG_KEY = "syncErrorLog"


class SyncErrorLog:
    """Ring buffer of sync errors mirrored to the local store.

    Entries are keyed by ``operation:documentId``; a repeated failure replaces
    its earlier entry. The oldest entry is evicted once ``limit`` is reached.
    """

    def __init__(self, local_store: Optional[LocalStore] = None, limit: int = 100):
        self.local_store = local_store
        self.limit = limit
        self._entries: "OrderedDict[str, SyncErrorRecord]" = OrderedDict()

    def record(
        self,
        operation: str,
        document_id: Optional[str],
        error: Exception,
        job_id: Optional[str] = None,
    ) -> SyncErrorRecord:
        """
        Record a caught error.

        Args:
            operation: Name of the failing step
            document_id: Affected page id, if any
            error: The caught exception
            job_id: Current sync job id

        Returns:
            The stored record
        """
        entry = SyncErrorRecord(
            operation=operation,
            document_id=document_id,
            message=str(error),
            timestamp=utcnow_iso(),
            job_id=job_id,
        )

        self._entries.pop(entry.key, None)
        self._entries[entry.key] = entry
        while len(self._entries) > self.limit:
            self._entries.popitem(last=False)

        self._persist(entry)
        return entry

    def _persist(self, entry: SyncErrorRecord) -> None:
        if self.local_store is None:
            return
        try:
            stored = self.local_store.get_item(SYNC_ERROR_LOG_KEY, [])
            stored.append(entry.to_dict())
            self.local_store.set_item(SYNC_ERROR_LOG_KEY, stored[-self.limit:])
        except Exception as e:
            # The log is diagnostic only; a storage failure must not mask the original error
            logger.warning(f"Failed to persist sync error log entry: {e}")

    def entries(self, limit: Optional[int] = None) -> List[SyncErrorRecord]:
        """Get in-memory and persisted entries, newest first."""
        records = list(self._entries.values())
        seen = {(e.key, e.timestamp) for e in records}

        if self.local_store is not None:
            for data in self.local_store.get_item(SYNC_ERROR_LOG_KEY, []):
                record = SyncErrorRecord.from_dict(data)
                if (record.key, record.timestamp) not in seen:
                    seen.add((record.key, record.timestamp))
                    records.append(record)

        ordered = sorted(records, key=lambda e: parse_timestamp(e.timestamp), reverse=True)
        return ordered[: limit or self.limit]

    def clear(self) -> None:
        self._entries.clear()
        if self.local_store is not None:
            self.local_store.remove_item(SYNC_ERROR_LOG_KEY)

    def __len__(self) -> int:
        return len(self._entries)
