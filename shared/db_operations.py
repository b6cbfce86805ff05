"""Local page store backed by SQLAlchemy."""

import logging
from typing import Any, Iterable, List, Optional, Set

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from shared.config import get_database_url
from shared.db_models import AppMetadata, Base, PageRecord
from shared.models import Page, SyncStatus, utcnow_iso

logger = logging.getLogger(__name__)

DELETED_PAGE_IDS_KEY = "deletedPageIds"

_PAGE_FIELDS = (
    "name", "order", "content", "created_at", "last_modified", "last_synced",
    "is_encrypted", "pending_sync", "sync_status",
)


def _to_page(record: PageRecord) -> Page:
    return Page(
        id=record.id,
        name=record.name or "",
        order=record.order or 0,
        content=record.content or "",
        created_at=record.created_at,
        last_modified=record.last_modified,
        last_synced=record.last_synced,
        is_encrypted=bool(record.is_encrypted),
        pending_sync=record.pending_sync or 0,
        sync_status=record.sync_status,
    )


class LocalStore:
    """Handles all local persistence for pages and sync metadata."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # Page Operations

    def get_page(self, page_id: str) -> Optional[Page]:
        """
        Get a page by id.

        Args:
            page_id: The page identifier

        Returns:
            Page or None if not found
        """
        with self.get_session() as session:
            record = session.get(PageRecord, page_id)
            return _to_page(record) if record else None

    def put_page(self, page: Page) -> Page:
        """
        Insert or replace a page.

        Args:
            page: The page to store

        Returns:
            The stored page
        """
        with self.get_session() as session:
            record = session.get(PageRecord, page.id)
            if record is None:
                record = PageRecord(id=page.id)
                session.add(record)
            for name in _PAGE_FIELDS:
                setattr(record, name, getattr(page, name))
            session.commit()
            return _to_page(record)

    def update_page(self, page_id: str, **fields: Any) -> Optional[Page]:
        """
        Update selected fields of a page.

        Args:
            page_id: The page identifier
            **fields: Page attributes to change

        Returns:
            The updated page or None if it does not exist
        """
        with self.get_session() as session:
            record = session.get(PageRecord, page_id)
            if record is None:
                return None
            for name, value in fields.items():
                if name not in _PAGE_FIELDS:
                    raise ValueError(f"Unknown page field: {name}")
                setattr(record, name, value)
            session.commit()
            return _to_page(record)

    def save_page(
        self,
        page_id: str,
        content: str,
        name: Optional[str] = None,
        order: Optional[int] = None,
    ) -> Page:
        """
        Record a local edit.

        Creates the page on first edit. The page is flagged for upload.

        Args:
            page_id: The page identifier
            content: New page content
            name: Optional new display name
            order: Optional new position

        Returns:
            The saved page
        """
        now = utcnow_iso()
        with self.get_session() as session:
            record = session.get(PageRecord, page_id)
            if record is None:
                record = PageRecord(
                    id=page_id,
                    name=name or "",
                    order=order or 0,
                    created_at=now,
                    is_encrypted=False,
                )
                session.add(record)
            else:
                if name is not None:
                    record.name = name
                if order is not None:
                    record.order = order
            record.content = content
            record.last_modified = now
            record.pending_sync = 1
            record.sync_status = SyncStatus.PENDING
            session.commit()
            return _to_page(record)

    def create_page_from_remote(self, page: Page) -> Page:
        """Store a page downloaded from the remote store; existing rows are replaced."""
        return self.put_page(page)

    def mark_synced(
        self,
        page_id: str,
        synced_at: str,
        expected_last_modified: Optional[str] = None,
    ) -> bool:
        """
        Clear the pending flag after a successful upload.

        Args:
            page_id: The page identifier
            synced_at: Upload commit time
            expected_last_modified: The modification time that was uploaded;
                if the row changed since, it stays pending

        Returns:
            True if the page was marked synced
        """
        with self.get_session() as session:
            record = session.get(PageRecord, page_id)
            if record is None:
                return False
            if expected_last_modified is not None and record.last_modified != expected_last_modified:
                logger.info(f"Page {page_id} changed during upload, keeping it pending")
                return False
            record.pending_sync = 0
            record.sync_status = SyncStatus.SYNCED
            record.last_synced = synced_at
            session.commit()
            return True

    def delete_page(self, page_id: str) -> bool:
        """
        Delete a page row.

        Args:
            page_id: The page identifier

        Returns:
            True if a row was removed
        """
        with self.get_session() as session:
            record = session.get(PageRecord, page_id)
            if record is None:
                return False
            session.delete(record)
            session.commit()
            return True

    def mark_page_deleted(self, page_id: str) -> None:
        """Delete a page locally and remember the id for the next sync."""
        self.delete_page(page_id)
        self.add_deleted_page_id(page_id)

    def get_pending_pages(self, above_id: Optional[str] = None) -> List[Page]:
        """
        Get pages with unpushed edits, ordered by id.

        Args:
            above_id: Only return ids strictly greater than this cursor

        Returns:
            List of pending pages
        """
        with self.get_session() as session:
            stmt = select(PageRecord).where(PageRecord.pending_sync == 1)
            if above_id is not None:
                stmt = stmt.where(PageRecord.id > above_id)
            stmt = stmt.order_by(PageRecord.id)
            return [_to_page(r) for r in session.execute(stmt).scalars().all()]

    def get_all_pages(self, order_by: str = "order") -> List[Page]:
        """Get every page ordered by display position or another page column."""
        column = getattr(PageRecord, order_by)
        with self.get_session() as session:
            stmt = select(PageRecord).order_by(column, PageRecord.id)
            return [_to_page(r) for r in session.execute(stmt).scalars().all()]

    def get_pages_modified_since(self, timestamp: str) -> List[Page]:
        """Get pages modified after the given ISO timestamp."""
        with self.get_session() as session:
            stmt = (
                select(PageRecord)
                .where(PageRecord.last_modified > timestamp)
                .order_by(PageRecord.last_modified)
            )
            return [_to_page(r) for r in session.execute(stmt).scalars().all()]

    # Metadata Operations

    def get_item(self, key: str, default: Any = None) -> Any:
        with self.get_session() as session:
            record = session.get(AppMetadata, key)
            return record.value if record is not None else default

    def set_item(self, key: str, value: Any) -> None:
        with self.get_session() as session:
            record = session.get(AppMetadata, key)
            if record is None:
                session.add(AppMetadata(key=key, value=value))
            else:
                record.value = value
            session.commit()

    def remove_item(self, key: str) -> None:
        with self.get_session() as session:
            record = session.get(AppMetadata, key)
            if record is not None:
                session.delete(record)
                session.commit()

    def get_deleted_page_ids(self) -> Set[str]:
        return set(self.get_item(DELETED_PAGE_IDS_KEY, []))

    def add_deleted_page_id(self, page_id: str) -> None:
        ids = self.get_deleted_page_ids()
        ids.add(page_id)
        self.set_item(DELETED_PAGE_IDS_KEY, sorted(ids))

    def clear_deleted_page_ids(self, page_ids: Iterable[str]) -> None:
        """Forget deletions that have been pushed to the remote store."""
        remaining = self.get_deleted_page_ids() - set(page_ids)
        self.set_item(DELETED_PAGE_IDS_KEY, sorted(remaining))
