"""Upload queue processor.

Drains pending pages from the status store into OneNote.  One pass runs
at a time per store; a second :meth:`UploadQueueProcessor.process_queue`
call while a pass is active returns immediately with ``skipped=True``.

Per page:  pending → in_progress (in memory) → uploaded | failed.
Failures are recorded on the page and the pass moves on; failed pages
come back only through :meth:`UploadQueueProcessor.retry_failed`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from inkbridge.cloud.client import OneNoteClient
from inkbridge.events import Subscribers, SyncCompleted, SyncProgress
from inkbridge.ingest.paths import parse_virtual_path
from inkbridge.models import PageRecord, utcnow
from inkbridge.store import PageStatusStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10

# Store keys with a pass in flight, shared by every processor in the process.
_ACTIVE_STORES: set[str] = set()


@dataclass
class QueueResult:
    skipped: bool = False
    cancelled: bool = False
    uploaded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def processed(self) -> int:
        return self.uploaded + self.failed


class UploadQueueProcessor:
    """Uploads pending pages, one batch per call."""

    def __init__(
        self,
        store: PageStatusStore,
        client: OneNoteClient,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.store = store
        self.client = client
        self.batch_size = batch_size
        self.progress: Subscribers[SyncProgress] = Subscribers()
        self.completed: Subscribers[SyncCompleted] = Subscribers()
        self.last_run: datetime | None = None
        # Pages currently being uploaded; never written to the store.
        self.in_progress: set[tuple[str, str]] = set()

    @property
    def is_running(self) -> bool:
        return self.store.key in _ACTIVE_STORES

    async def process_queue(
        self,
        batch_size: int | None = None,
        cancel: asyncio.Event | None = None,
        document_id: str | None = None,
    ) -> QueueResult:
        key = self.store.key
        if key in _ACTIVE_STORES:
            logger.info("Upload queue already being processed; skipping")
            return QueueResult(skipped=True)

        _ACTIVE_STORES.add(key)
        started = time.monotonic()
        result = QueueResult()
        try:
            pages = self.store.list_pending(
                limit=batch_size or self.batch_size, document_id=document_id
            )
            self._report(f"Found {len(pages)} pages to sync", len(pages), 0)

            notebooks: dict[str, str] = {}
            sections: dict[tuple[str, str], str] = {}
            for index, page in enumerate(pages):
                if cancel is not None and cancel.is_set():
                    logger.info("Upload queue cancelled after %d pages", index)
                    result.cancelled = True
                    break

                self._report(
                    f"Syncing {page.title or page.page_id}", len(pages), index, page.virtual_path
                )
                await self._process_page(page, notebooks, sections, result)

            self._report("Sync finished", len(pages), result.processed)
        except Exception as exc:
            logger.exception("Upload queue pass failed")
            result.errors.append(str(exc))
            result.duration_s = time.monotonic() - started
            self.completed.emit(
                SyncCompleted(False, result.uploaded, result.failed, result.duration_s, str(exc))
            )
            raise
        finally:
            _ACTIVE_STORES.discard(key)
            self.last_run = utcnow()

        result.duration_s = time.monotonic() - started
        logger.info(
            "Upload queue pass: %d uploaded, %d failed in %.1fs",
            result.uploaded, result.failed, result.duration_s,
        )
        self.completed.emit(
            SyncCompleted(result.failed == 0, result.uploaded, result.failed, result.duration_s)
        )
        return result

    def retry_failed(self) -> int:
        """Return failed pages to the queue. retry_count and history are kept."""
        count = self.store.reset_failed()
        logger.info("Reset %d failed pages to pending", count)
        return count

    # ── Internal ───────────────────────────────────────────────────

    async def _process_page(
        self,
        page: PageRecord,
        notebooks: dict[str, str],
        sections: dict[tuple[str, str], str],
        result: QueueResult,
    ) -> None:
        self.in_progress.add(page.key)
        try:
            location = parse_virtual_path(page.virtual_path)
            notebook_id = await self._resolve_notebook(location.notebook, notebooks)
            section_id = await self._resolve_section(notebook_id, location.section, sections)

            data = Path(page.local_path).read_bytes()
            metadata = {
                "Original Path": page.virtual_path,
                "Document ID": page.document_id,
                "Page Number": page.page_number,
                "Imported": utcnow().strftime("%Y-%m-%d %H:%M:%S UTC"),
            }
            cloud_page = await self.client.upload_page(
                section_id,
                page.title or location.page,
                data,
                metadata,
                filename=Path(page.local_path).name,
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("Failed to upload page %s/%s: %s", page.document_id, page.page_id, message)
            self.store.mark_failed(page.document_id, page.page_id, message)
            self.store.record_sync_event(page.document_id, page.page_id, False, message)
            result.failed += 1
            result.errors.append(f"{page.title or page.page_id}: {message}")
        else:
            self.store.mark_uploaded(
                page.document_id, page.page_id, cloud_page.id, cloud_page.web_url
            )
            self.store.record_sync_event(
                page.document_id, page.page_id, True, f"Uploaded as {cloud_page.id}"
            )
            result.uploaded += 1
        finally:
            self.in_progress.discard(page.key)

    async def _resolve_notebook(self, name: str, cache: dict[str, str]) -> str:
        if name not in cache:
            notebooks = await self.client.get_notebooks()
            existing = next((n for n in notebooks if n.display_name == name), None)
            notebook = existing or await self.client.create_notebook(name)
            cache[name] = notebook.id
        return cache[name]

    async def _resolve_section(
        self, notebook_id: str, name: str, cache: dict[tuple[str, str], str]
    ) -> str:
        key = (notebook_id, name)
        if key not in cache:
            sections = await self.client.get_sections(notebook_id)
            existing = next((s for s in sections if s.display_name == name), None)
            section = existing or await self.client.create_section(notebook_id, name)
            cache[key] = section.id
        return cache[key]

    def _report(self, message: str, total: int, processed: int, item: str | None = None) -> None:
        self.progress.emit(SyncProgress(message, total, processed, item))
