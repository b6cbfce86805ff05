"""Shared data models for the notepad sync and parser services."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

EPOCH = "1970-01-01T00:00:00+00:00"


def utcnow_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are treated as UTC and None as the epoch."""
    if not value:
        value = EPOCH
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def encode_page_cursor(last_modified: Optional[str], page_id: str) -> str:
    """
    Build a download resume token from a document's position in the query order.

    The token is ``"<lastModified ISO>|<id>"`` and records the position itself,
    so later edits to that document cannot move it.
    """
    return f"{parse_timestamp(last_modified).isoformat()}|{page_id}"


def decode_page_cursor(token: Optional[str]) -> Optional[Tuple[datetime, str]]:
    """
    Split a resume token into ``(lastModified, id)``.

    Returns:
        None for an empty or malformed token, meaning paging starts over
    """
    if not token or "|" not in token:
        return None
    last_modified, _, page_id = token.partition("|")
    try:
        return parse_timestamp(last_modified), page_id
    except ValueError:
        return None


class SyncPhase:
    """Checkpointable sync phases."""
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    DELETING = "deleting"

    ALL = (DOWNLOADING, UPLOADING, DELETING)


class SyncStatus:
    """Per-page sync status values."""
    SYNCED = "synced"
    MERGED = "merged"
    PENDING = "pending"
    ERROR = "error"


@dataclass
class Page:
    """A note document.

    ``pending_sync`` is 1 while the page holds local edits that have not been
    pushed to the remote store.
    """
    id: str
    content: str = ""
    name: str = ""
    order: int = 0
    created_at: Optional[str] = None
    last_modified: Optional[str] = None
    last_synced: Optional[str] = None
    is_encrypted: bool = False
    pending_sync: int = 0
    sync_status: str = SyncStatus.PENDING

    def copy(self, **changes) -> "Page":
        return replace(self, **changes)

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the remote document shape."""
        return {
            "id": self.id,
            "name": self.name,
            "order": self.order,
            "content": self.content,
            "createdAt": self.created_at,
            "lastModified": self.last_modified,
            "lastSynced": self.last_synced,
            "isEncrypted": self.is_encrypted,
            "pendingSync": self.pending_sync,
            "syncStatus": self.sync_status,
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Page":
        """Build a page from a remote document."""
        return cls(
            id=document["id"],
            content=document.get("content") or "",
            name=document.get("name") or "",
            order=document.get("order") or 0,
            created_at=document.get("createdAt"),
            last_modified=document.get("lastModified"),
            last_synced=document.get("lastSynced"),
            is_encrypted=bool(document.get("isEncrypted")),
            pending_sync=int(document.get("pendingSync") or 0),
            sync_status=document.get("syncStatus") or SyncStatus.SYNCED,
        )


@dataclass
class Tombstone:
    """Durable marker that a page was deleted."""
    page_id: str
    deleted_at: str

    def to_document(self) -> Dict[str, Any]:
        return {"pageId": self.page_id, "deletedAt": self.deleted_at}

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Tombstone":
        return cls(page_id=document["pageId"], deleted_at=document["deletedAt"])


@dataclass
class SyncCheckpoint:
    """Persisted progress of an interrupted sync job."""
    job_id: str
    phase: Optional[str]
    resume_token: Optional[str] = None
    processed_items: int = 0
    total_items: int = 0
    failed_items: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "phase": self.phase,
            "resumeToken": self.resume_token,
            "processedItems": self.processed_items,
            "totalItems": self.total_items,
            "failedItems": list(self.failed_items),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncCheckpoint":
        return cls(
            job_id=data.get("jobId"),
            phase=data.get("phase"),
            resume_token=data.get("resumeToken"),
            processed_items=data.get("processedItems", 0),
            total_items=data.get("totalItems", 0),
            failed_items=list(data.get("failedItems") or []),
            timestamp=data.get("timestamp") or utcnow_iso(),
        )


@dataclass
class SyncErrorRecord:
    """Diagnostic record of a caught sync error."""
    operation: str
    document_id: Optional[str]
    message: str
    timestamp: str
    job_id: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.operation}:{self.document_id or 'general'}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "documentId": self.document_id,
            "message": self.message,
            "timestamp": self.timestamp,
            "jobId": self.job_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncErrorRecord":
        return cls(
            operation=data.get("operation", "unknown"),
            document_id=data.get("documentId"),
            message=data.get("message", ""),
            timestamp=data.get("timestamp") or EPOCH,
            job_id=data.get("jobId"),
        )
