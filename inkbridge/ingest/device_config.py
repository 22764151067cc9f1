"""Configuration handed to the device agent on ``GET /config``."""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import BaseModel, Field

from inkbridge import __version__
from inkbridge.config import Settings
from inkbridge.store import PageStatusStore

logger = logging.getLogger(__name__)


class ConfigurationProvider(Protocol):
    async def get_configuration_json(self, device_id: str) -> str:
        ...


class DeviceConfiguration(BaseModel):
    device_id: str
    server_url: str
    api_key: str
    shared_paths: list[str] = Field(default_factory=lambda: ["*"])
    upload_interval: int = 30
    max_retries: int = 5
    retry_delay: int = 20
    timeout: int = 10
    version: str = __version__


class DeviceConfigProvider:
    """Builds agent configuration from settings plus the saved sync config.

    The user's folder selection lives in the store's configuration row
    under ``sync_files``; an empty selection shares everything.
    """

    def __init__(self, settings: Settings, store: PageStatusStore | None = None) -> None:
        self.settings = settings
        self.store = store

    async def get_configuration_json(self, device_id: str) -> str:
        saved = self.store.get_configuration() if self.store is not None else None
        saved = saved or {}

        config = DeviceConfiguration(
            device_id=device_id,
            server_url=self.settings.upload_url,
            api_key=self.settings.api_key,
            max_retries=int(saved.get("max_retries", self.settings.max_retries)),
        )
        if saved.get("sync_files"):
            config.shared_paths = list(saved["sync_files"])

        logger.debug("Serving configuration to device %s", device_id)
        return config.model_dump_json()
