"""Tests for the upload queue processor."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from inkbridge.cloud.client import CloudPage, Notebook, Section
from inkbridge.errors import CloudConnectionError
from inkbridge.models import PageRecord, SyncStatus, utcnow
from inkbridge.store import PageStatusStore
from inkbridge.sync.queue import UploadQueueProcessor


class FakeOneNote:
    """Records calls; pages whose title is in *fail_titles* raise."""

    def __init__(self, fail_titles=(), notebooks=(), delay=0.0):
        self.fail_titles = set(fail_titles)
        self.notebooks = [Notebook(id=f"nb-{n}", display_name=n) for n in notebooks]
        self.sections: dict[str, list[Section]] = {}
        self.uploads: list[dict] = []
        self.delay = delay
        self.calls: list[str] = []

    async def get_notebooks(self):
        self.calls.append("get_notebooks")
        return list(self.notebooks)

    async def create_notebook(self, name):
        self.calls.append(f"create_notebook:{name}")
        nb = Notebook(id=f"nb-{name}", display_name=name)
        self.notebooks.append(nb)
        return nb

    async def get_sections(self, notebook_id):
        self.calls.append("get_sections")
        return list(self.sections.get(notebook_id, []))

    async def create_section(self, notebook_id, name):
        self.calls.append(f"create_section:{name}")
        section = Section(id=f"{notebook_id}/{name}", display_name=name)
        self.sections.setdefault(notebook_id, []).append(section)
        return section

    async def upload_page(self, section_id, title, data, metadata, filename="page.rm"):
        if self.delay:
            await asyncio.sleep(self.delay)
        if title in self.fail_titles:
            raise CloudConnectionError("graph unreachable")
        self.uploads.append(
            {"section": section_id, "title": title, "data": data, "metadata": metadata}
        )
        return CloudPage(id=f"cloud-{len(self.uploads)}", web_url="https://onenote/x")


def _add_page(store, tmp_path, page_id, title="Page 1", path="Physics/Ch1/Page 1", age_min=0):
    local = tmp_path / f"{page_id}.rm"
    local.write_bytes(f"ink-{page_id}".encode())
    store.save_page(
        PageRecord(
            document_id="doc1",
            page_id=page_id,
            title=title,
            virtual_path=path,
            local_path=str(local),
            last_modified=utcnow() - timedelta(minutes=age_min),
        )
    )


class TestProcessQueue:
    async def test_uploads_pending_pages(self, store, tmp_path):
        _add_page(store, tmp_path, "p1", title="Page 3", path="Physics/Ch1/Page 3")
        client = FakeOneNote()
        processor = UploadQueueProcessor(store, client)

        result = await processor.process_queue()

        assert result.uploaded == 1
        assert result.failed == 0
        page = store.get_page("doc1", "p1")
        assert page.status is SyncStatus.UPLOADED
        assert page.cloud_page_id == "cloud-1"
        assert page.retry_count == 0
        upload = client.uploads[0]
        assert upload["section"] == "nb-rm_Physics/Ch1"
        assert upload["data"] == b"ink-p1"
        assert upload["metadata"]["Original Path"] == "Physics/Ch1/Page 3"
        assert upload["metadata"]["Document ID"] == "doc1"
        assert set(upload["metadata"]) == {"Original Path", "Document ID", "Page Number", "Imported"}

    async def test_existing_notebook_is_reused(self, store, tmp_path):
        _add_page(store, tmp_path, "p1")
        client = FakeOneNote(notebooks=["rm_Physics"])
        await UploadQueueProcessor(store, client).process_queue()
        assert not any(c.startswith("create_notebook") for c in client.calls)

    async def test_lookups_cached_within_pass(self, store, tmp_path):
        for i in range(3):
            _add_page(store, tmp_path, f"p{i}")
        client = FakeOneNote()
        await UploadQueueProcessor(store, client).process_queue()
        assert client.calls.count("get_notebooks") == 1
        assert client.calls.count("create_section:Ch1") == 1
        assert len(client.uploads) == 3

    async def test_failure_is_recorded_and_batch_continues(self, store, tmp_path):
        _add_page(store, tmp_path, "bad", title="Broken", age_min=0)
        _add_page(store, tmp_path, "good", title="Fine", age_min=5)
        processor = UploadQueueProcessor(store, FakeOneNote(fail_titles=["Broken"]))

        result = await processor.process_queue()

        assert result.uploaded == 1
        assert result.failed == 1
        bad = store.get_page("doc1", "bad")
        assert bad.status is SyncStatus.FAILED
        assert bad.retry_count == 1
        assert "graph unreachable" in bad.last_error
        assert bad.cloud_page_id is None
        assert store.get_page("doc1", "good").status is SyncStatus.UPLOADED

    async def test_missing_local_file_fails_page(self, store, tmp_path):
        _add_page(store, tmp_path, "p1")
        (tmp_path / "p1.rm").unlink()
        result = await UploadQueueProcessor(store, FakeOneNote()).process_queue()
        assert result.failed == 1
        assert store.get_page("doc1", "p1").status is SyncStatus.FAILED

    async def test_history_records_each_outcome(self, store, tmp_path):
        _add_page(store, tmp_path, "bad", title="Broken")
        _add_page(store, tmp_path, "good", title="Fine")
        await UploadQueueProcessor(store, FakeOneNote(fail_titles=["Broken"])).process_queue()
        outcomes = {e.page_id: e.success for e in store.get_sync_history()}
        assert outcomes == {"bad": False, "good": True}

    async def test_batch_size_and_order(self, store, tmp_path):
        for i, age in enumerate([30, 10, 20]):
            _add_page(store, tmp_path, f"p{i}", title=f"T{i}", age_min=age)
        client = FakeOneNote()
        result = await UploadQueueProcessor(store, client).process_queue(batch_size=2)
        assert result.uploaded == 2
        # most recently modified first
        assert [u["title"] for u in client.uploads] == ["T1", "T2"]
        assert store.get_page("doc1", "p0").status is SyncStatus.PENDING

    async def test_events_emitted(self, store, tmp_path):
        _add_page(store, tmp_path, "p1")
        processor = UploadQueueProcessor(store, FakeOneNote())
        progress, completed = [], []
        processor.progress.subscribe(progress.append)
        processor.completed.subscribe(completed.append)

        await processor.process_queue()

        assert progress[-1].processed == 1
        assert progress[-1].percentage == 100.0
        assert completed[0].success is True
        assert completed[0].synced == 1


class TestSingleFlight:
    async def test_second_pass_is_skipped(self, store, tmp_path):
        _add_page(store, tmp_path, "p1")
        client = FakeOneNote(delay=0.05)
        first = UploadQueueProcessor(store, client)
        # a second processor on the same database shares the registry
        second = UploadQueueProcessor(PageStatusStore(), client)

        results = await asyncio.gather(first.process_queue(), second.process_queue())

        assert results[0].uploaded == 1
        assert results[1].skipped is True
        assert len(client.uploads) == 1
        assert first.is_running is False

    async def test_cancel_between_pages(self, store, tmp_path):
        for i in range(3):
            _add_page(store, tmp_path, f"p{i}", age_min=i)
        cancel = asyncio.Event()
        processor = UploadQueueProcessor(store, FakeOneNote())
        processor.progress.subscribe(
            lambda e: cancel.set() if e.processed == 1 and e.current_item else None
        )

        result = await processor.process_queue(cancel=cancel)

        assert result.cancelled is True
        assert result.uploaded == 2
        assert len(store.list_pending()) == 1


class TestRetryFailed:
    async def test_failed_page_is_picked_up_next_pass(self, store, tmp_path):
        _add_page(store, tmp_path, "p1", title="Flaky")
        client = FakeOneNote(fail_titles=["Flaky"])
        processor = UploadQueueProcessor(store, client)

        await processor.process_queue()
        assert store.get_page("doc1", "p1").status is SyncStatus.FAILED

        # a failed page is not retried automatically
        assert (await processor.process_queue()).processed == 0

        assert processor.retry_failed() == 1
        page = store.get_page("doc1", "p1")
        assert page.status is SyncStatus.PENDING
        assert page.retry_count == 1

        client.fail_titles.clear()
        result = await processor.process_queue()
        assert result.uploaded == 1
        page = store.get_page("doc1", "p1")
        assert page.status is SyncStatus.UPLOADED
        assert page.retry_count == 1
        assert len(store.get_sync_history()) == 2
