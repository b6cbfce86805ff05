"""SQLAlchemy database models for the local page store."""

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


class PageRecord(Base):
    """Model for pages table."""
    __tablename__ = 'pages'

    id = Column(String(255), primary_key=True)
    name = Column(String(500), nullable=False, default="")
    order = Column("page_order", Integer, nullable=False, default=0)
    content = Column(Text, nullable=False, default="")
    created_at = Column(String(64))
    last_modified = Column(String(64))
    last_synced = Column(String(64))
    is_encrypted = Column(Boolean, nullable=False, default=False)
    pending_sync = Column(Integer, nullable=False, default=0)
    sync_status = Column(String(20), nullable=False, default="pending")

    __table_args__ = (
        Index('idx_pages_pending_sync', 'pending_sync'),
        Index('idx_pages_last_modified', 'last_modified'),
    )


class AppMetadata(Base):
    """Model for metadata table.

    Holds the checkpoint, last sync time, deletion set and error log as JSON.
    """
    __tablename__ = 'metadata'

    key = Column(String(255), primary_key=True)
    value = Column(JSON)
