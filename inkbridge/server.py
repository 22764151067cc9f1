"""InkBridge standalone sync service.

Runs the ingestion listener the device agent pushes pages to, the
automatic upload loop, and (when a device password is configured) a
session to the tablet.

Start with::

    python -m inkbridge.server
"""

from __future__ import annotations

import asyncio
import logging

from inkbridge.cloud.client import OneNoteClient
from inkbridge.config import Settings
from inkbridge.db import init_db
from inkbridge.device.manager import DeviceManager
from inkbridge.events import PageReceived
from inkbridge.ingest.device_config import DeviceConfigProvider
from inkbridge.ingest.server import IngestionServer, create_app
from inkbridge.store import PageStatusStore
from inkbridge.sync.queue import UploadQueueProcessor
from inkbridge.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


async def serve(settings: Settings) -> None:
    init_db(settings.db_path)
    store = PageStatusStore()

    app = create_app(store, DeviceConfigProvider(settings, store), settings.upload_dir)
    app.state.page_received.subscribe(_log_page)
    server = IngestionServer(app, host=settings.host)

    async def _token() -> str | None:
        return settings.graph_token or None

    client = OneNoteClient(_token)
    processor = UploadQueueProcessor(store, client, batch_size=settings.batch_size)
    scheduler = SyncScheduler(
        processor,
        interval_minutes=settings.sync_interval_minutes,
        cache_retention_days=settings.cache_retention_days,
    )
    devices = DeviceManager(settings)

    await server.start(settings.port)
    await scheduler.start()
    if settings.device_password:
        await devices.on_device_changed(True, settings.device_host)

    try:
        await server.wait()
    finally:
        await scheduler.stop()
        await devices.disconnect()
        await client.aclose()


def _log_page(event: PageReceived) -> None:
    logger.info("Queued %s/%s from %s", event.document_id, event.page_id, event.virtual_path)


def main():
    settings = Settings.from_env()
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting InkBridge on %s:%d", settings.host, settings.port)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
