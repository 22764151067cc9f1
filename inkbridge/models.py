"""Records tracked by the page status store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class SyncStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"  # held in memory only, never persisted
    UPLOADED = "uploaded"
    FAILED = "failed"
    SKIPPED = "skipped"
    DELETED = "deleted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PageRecord:
    """One page received from the device, keyed by (document_id, page_id)."""

    document_id: str
    page_id: str
    page_number: str = "1"
    title: str = ""
    virtual_path: str = ""
    local_path: str = ""
    size_bytes: int = 0
    content_hash: str = ""
    last_modified: datetime = field(default_factory=utcnow)
    status: SyncStatus = SyncStatus.PENDING
    retry_count: int = 0
    last_error: str | None = None
    cloud_page_id: str | None = None
    cloud_page_url: str | None = None
    last_sync_time: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.document_id, self.page_id)


@dataclass
class DocumentRecord:
    document_id: str
    visible_name: str
    type: str = "DocumentType"
    parent: str = ""
    last_modified: datetime = field(default_factory=utcnow)
    pages: list[PageRecord] = field(default_factory=list)


@dataclass
class SyncEvent:
    id: int
    timestamp: datetime
    document_id: str
    page_id: str
    success: bool
    details: str | None = None
