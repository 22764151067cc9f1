"""Page status store: durable record of every page's sync lifecycle.

Rows are decoded into :class:`~inkbridge.models.PageRecord` /
:class:`~inkbridge.models.DocumentRecord` at this boundary; nothing
outside this module touches ``sqlite3.Row`` objects.

Status rules enforced here:
  - ``retry_count`` increments only when a page becomes ``failed``
  - ``cloud_page_id`` is written only when a page becomes ``uploaded``
  - ``failed → pending`` (manual retry) leaves ``retry_count`` untouched
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from inkbridge.db import get_db
from inkbridge.models import DocumentRecord, PageRecord, SyncEvent, SyncStatus, utcnow

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _page_from_row(row: sqlite3.Row) -> PageRecord:
    return PageRecord(
        document_id=str(row["document_id"]),
        page_id=str(row["page_id"]),
        page_number=row["page_number"] or "1",
        title=row["title"] or "",
        virtual_path=row["virtual_path"] or "",
        local_path=row["local_path"] or "",
        size_bytes=int(row["size_bytes"] or 0),
        content_hash=row["content_hash"] or "",
        last_modified=_parse_dt(row["last_modified"]) or utcnow(),
        status=SyncStatus(row["status"]),
        retry_count=int(row["retry_count"] or 0),
        last_error=row["last_error"],
        cloud_page_id=row["cloud_page_id"],
        cloud_page_url=row["cloud_page_url"],
        last_sync_time=_parse_dt(row["last_sync_time"]),
    )


def _document_from_row(row: sqlite3.Row) -> DocumentRecord:
    return DocumentRecord(
        document_id=str(row["document_id"]),
        visible_name=row["visible_name"],
        type=row["type"] or "DocumentType",
        parent=row["parent"] or "",
        last_modified=_parse_dt(row["last_modified"]) or utcnow(),
    )


class PageStatusStore:
    """SQLite-backed store for pages, documents and sync history."""

    def __init__(self, conn: sqlite3.Connection | None = None) -> None:
        self.conn = conn or get_db()
        self.conn.row_factory = sqlite3.Row

    @property
    def key(self) -> str:
        """Identity of the underlying database, shared by every store opened on it."""
        row = self.conn.execute("PRAGMA database_list").fetchone()
        path = row[2] if row is not None else ""
        return path or f"memory:{id(self.conn)}"

    # ── Pages ─────────────────────────────────────────────────────

    def get_page(self, document_id: str, page_id: str) -> PageRecord | None:
        row = self.conn.execute(
            "SELECT * FROM pages WHERE document_id = ? AND page_id = ?",
            (document_id, page_id),
        ).fetchone()
        return _page_from_row(row) if row is not None else None

    def list_pending(self, limit: int = 100, document_id: str | None = None) -> list[PageRecord]:
        """Pending pages, most recently modified first."""
        query = "SELECT * FROM pages WHERE status = ?"
        params: list[Any] = [SyncStatus.PENDING.value]
        if document_id:
            query += " AND document_id = ?"
            params.append(document_id)
        query += " ORDER BY last_modified DESC LIMIT ?"
        params.append(limit)
        return [_page_from_row(r) for r in self.conn.execute(query, params).fetchall()]

    def list_by_status(self, status: SyncStatus) -> list[PageRecord]:
        rows = self.conn.execute(
            "SELECT * FROM pages WHERE status = ? ORDER BY last_modified DESC",
            (SyncStatus(status).value,),
        ).fetchall()
        return [_page_from_row(r) for r in rows]

    def list_document_pages(self, document_id: str) -> list[PageRecord]:
        rows = self.conn.execute(
            "SELECT * FROM pages WHERE document_id = ? ORDER BY page_number",
            (document_id,),
        ).fetchall()
        return [_page_from_row(r) for r in rows]

    def save_page(self, page: PageRecord) -> None:
        """Insert or replace a page; creates a placeholder document when missing."""
        self._write_page(page)
        self.conn.commit()

    def _write_page(self, page: PageRecord) -> None:
        if page.status is SyncStatus.IN_PROGRESS:
            raise ValueError("in_progress is never persisted")
        self.conn.execute(
            "INSERT OR IGNORE INTO documents (document_id, visible_name, last_modified) "
            "VALUES (?, ?, ?)",
            (page.document_id, page.document_id, _iso(page.last_modified)),
        )
        self.conn.execute(
            """INSERT OR REPLACE INTO pages
               (document_id, page_id, page_number, title, virtual_path, local_path,
                size_bytes, content_hash, last_modified, status, retry_count,
                last_error, cloud_page_id, cloud_page_url, last_sync_time)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                page.document_id,
                page.page_id,
                page.page_number,
                page.title,
                page.virtual_path,
                page.local_path,
                page.size_bytes,
                page.content_hash,
                _iso(page.last_modified),
                SyncStatus(page.status).value,
                page.retry_count,
                page.last_error,
                page.cloud_page_id,
                page.cloud_page_url,
                _iso(page.last_sync_time),
            ),
        )

    def update_status(
        self,
        document_id: str,
        page_id: str,
        status: SyncStatus,
        error: str | None = None,
        cloud_page_id: str | None = None,
        cloud_page_url: str | None = None,
    ) -> bool:
        """Move a page to *status*. Returns False when the page does not exist."""
        status = SyncStatus(status)
        if status is SyncStatus.IN_PROGRESS:
            raise ValueError("in_progress is never persisted")
        if cloud_page_id is not None and status is not SyncStatus.UPLOADED:
            raise ValueError("cloud_page_id is only set on an uploaded transition")

        now = utcnow().isoformat()
        cur = self.conn.execute(
            """UPDATE pages SET
                   status = ?,
                   last_error = ?,
                   retry_count = retry_count + ?,
                   last_sync_time = CASE WHEN ? THEN ? ELSE last_sync_time END,
                   cloud_page_id = COALESCE(?, cloud_page_id),
                   cloud_page_url = COALESCE(?, cloud_page_url)
               WHERE document_id = ? AND page_id = ?""",
            (
                status.value,
                error,
                1 if status is SyncStatus.FAILED else 0,
                status is SyncStatus.UPLOADED,
                now,
                cloud_page_id,
                cloud_page_url,
                document_id,
                page_id,
            ),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def mark_uploaded(
        self,
        document_id: str,
        page_id: str,
        cloud_page_id: str,
        cloud_page_url: str | None = None,
    ) -> bool:
        return self.update_status(
            document_id, page_id, SyncStatus.UPLOADED,
            cloud_page_id=cloud_page_id, cloud_page_url=cloud_page_url,
        )

    def mark_failed(self, document_id: str, page_id: str, error: str) -> bool:
        return self.update_status(document_id, page_id, SyncStatus.FAILED, error=error)

    def reset_failed(self) -> int:
        """Return every failed page to pending. Keeps retry_count and last_error."""
        cur = self.conn.execute(
            "UPDATE pages SET status = ? WHERE status = ?",
            (SyncStatus.PENDING.value, SyncStatus.FAILED.value),
        )
        self.conn.commit()
        return cur.rowcount

    def status_counts(self) -> dict[str, int]:
        rows = self.conn.execute(
            "SELECT status, COUNT(*) AS n FROM pages GROUP BY status"
        ).fetchall()
        return {r["status"]: r["n"] for r in rows}

    # ── Documents ─────────────────────────────────────────────────

    def save_document(self, document: DocumentRecord) -> None:
        """Upsert a document and any pages attached to it in one transaction."""
        try:
            self._write_document(document)
            for page in document.pages:
                self._write_page(page)
        except Exception:
            self.conn.rollback()
            raise
        self.conn.commit()

    def _write_document(self, document: DocumentRecord) -> None:
        self.conn.execute(
            """INSERT INTO documents (document_id, visible_name, type, parent, last_modified)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(document_id) DO UPDATE SET
                   visible_name = excluded.visible_name,
                   type = excluded.type,
                   parent = excluded.parent,
                   last_modified = excluded.last_modified""",
            (
                document.document_id,
                document.visible_name,
                document.type,
                document.parent,
                _iso(document.last_modified),
            ),
        )

    def get_document(self, document_id: str) -> DocumentRecord | None:
        row = self.conn.execute(
            "SELECT * FROM documents WHERE document_id = ?", (document_id,)
        ).fetchone()
        if row is None:
            return None
        doc = _document_from_row(row)
        doc.pages = self.list_document_pages(document_id)
        return doc

    def list_documents(self, parent: str | None = None) -> list[DocumentRecord]:
        query = "SELECT * FROM documents"
        params: list[Any] = []
        if parent is not None:
            query += " WHERE parent = ?"
            params.append(parent)
        query += " ORDER BY visible_name"
        docs = [_document_from_row(r) for r in self.conn.execute(query, params).fetchall()]
        for doc in docs:
            doc.pages = self.list_document_pages(doc.document_id)
        return docs

    # ── Configuration ─────────────────────────────────────────────

    def get_configuration(self) -> dict | None:
        row = self.conn.execute(
            "SELECT json FROM configuration ORDER BY updated_at DESC LIMIT 1"
        ).fetchone()
        return json.loads(row["json"]) if row is not None else None

    def save_configuration(self, config: dict, config_id: str = "default") -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO configuration (id, json, updated_at) VALUES (?, ?, ?)",
            (config_id, json.dumps(config), utcnow().isoformat()),
        )
        self.conn.commit()

    # ── Sync history ──────────────────────────────────────────────

    def record_sync_event(
        self,
        document_id: str,
        page_id: str,
        success: bool,
        details: str | None = None,
    ) -> None:
        self.conn.execute(
            "INSERT INTO sync_history (timestamp, document_id, page_id, success, details) "
            "VALUES (?, ?, ?, ?, ?)",
            (utcnow().isoformat(), document_id, page_id, 1 if success else 0, details),
        )
        self.conn.commit()

    def get_sync_history(self, limit: int = 100) -> list[SyncEvent]:
        rows = self.conn.execute(
            "SELECT * FROM sync_history ORDER BY timestamp DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [
            SyncEvent(
                id=r["id"],
                timestamp=_parse_dt(r["timestamp"]) or utcnow(),
                document_id=r["document_id"],
                page_id=r["page_id"],
                success=bool(r["success"]),
                details=r["details"],
            )
            for r in rows
        ]

    # ── Cache management ──────────────────────────────────────────

    def cleanup_old_cache(self, days_to_keep: int) -> int:
        """Delete uploaded pages synced more than *days_to_keep* days ago.

        Local page files of the removed rows are deleted too, as is sync
        history older than the cutoff.  Returns the number of pages removed.
        """
        cutoff = (utcnow() - timedelta(days=days_to_keep)).isoformat()
        rows = self.conn.execute(
            "SELECT local_path FROM pages WHERE status = ? AND last_sync_time < ?",
            (SyncStatus.UPLOADED.value, cutoff),
        ).fetchall()
        cur = self.conn.execute(
            "DELETE FROM pages WHERE status = ? AND last_sync_time < ?",
            (SyncStatus.UPLOADED.value, cutoff),
        )
        self.conn.execute("DELETE FROM sync_history WHERE timestamp < ?", (cutoff,))
        self.conn.commit()

        for row in rows:
            if row["local_path"]:
                Path(row["local_path"]).unlink(missing_ok=True)

        if cur.rowcount:
            logger.info("Cache cleanup removed %d uploaded pages", cur.rowcount)
        return cur.rowcount

    def clear_cache(self, upload_dir: str | Path | None = None) -> None:
        """Drop every page, document and history row, and empty *upload_dir*."""
        self.conn.execute("DELETE FROM pages")
        self.conn.execute("DELETE FROM documents")
        self.conn.execute("DELETE FROM sync_history")
        self.conn.commit()

        if upload_dir is not None:
            root = Path(upload_dir)
            if root.exists():
                for path in sorted(root.rglob("*"), reverse=True):
                    if path.is_file():
                        path.unlink()
                    else:
                        path.rmdir()
        logger.info("Cache cleared")

    @staticmethod
    def get_cache_size(upload_dir: str | Path) -> int:
        """Total bytes of received page files under *upload_dir*."""
        root = Path(upload_dir)
        if not root.exists():
            return 0
        return sum(p.stat().st_size for p in root.rglob("*") if p.is_file())
