"""Runtime settings, read from ``INKBRIDGE_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

# Every API key the device agent presents must start with this marker.
API_KEY_PREFIX = "rmOneNoteSync"

# Default address of a reMarkable attached over USB.
USB_DEVICE_HOST = "10.11.99.1"


def _data_dir() -> Path:
    return Path(os.environ.get("INKBRIDGE_DATA_DIR", "./data"))


@dataclass
class Settings:
    data_dir: Path = field(default_factory=_data_dir)
    host: str = "0.0.0.0"
    port: int = 8080
    server_url: str = ""  # URL the device agent posts to; derived from port when empty
    api_key: str = f"{API_KEY_PREFIX}-local"
    graph_token: str = ""  # bearer token for OneNote; signing in is handled elsewhere
    device_host: str = USB_DEVICE_HOST
    device_password: str = ""
    connect_timeout: float = 10.0
    command_timeout: float = 30.0
    sync_interval_minutes: int = 30
    batch_size: int = 10
    max_retries: int = 5
    cache_retention_days: int = 30
    binaries_dir: Path = Path("./resources/binaries")

    @property
    def upload_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "inkbridge.db"

    @property
    def upload_url(self) -> str:
        if self.server_url:
            return self.server_url.rstrip("/") + "/upload"
        return f"http://localhost:{self.port}/upload"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            data_dir=_data_dir(),
            host=env.get("INKBRIDGE_HOST", "0.0.0.0"),
            port=int(env.get("INKBRIDGE_PORT", "8080")),
            server_url=env.get("INKBRIDGE_SERVER_URL", ""),
            api_key=env.get("INKBRIDGE_API_KEY", f"{API_KEY_PREFIX}-local"),
            graph_token=env.get("INKBRIDGE_GRAPH_TOKEN", ""),
            device_host=env.get("INKBRIDGE_DEVICE_HOST", USB_DEVICE_HOST),
            device_password=env.get("INKBRIDGE_DEVICE_PASSWORD", ""),
            sync_interval_minutes=int(env.get("INKBRIDGE_SYNC_INTERVAL", "30")),
            batch_size=int(env.get("INKBRIDGE_BATCH_SIZE", "10")),
            cache_retention_days=int(env.get("INKBRIDGE_CACHE_RETENTION_DAYS", "30")),
            binaries_dir=Path(env.get("INKBRIDGE_BINARIES_DIR", "./resources/binaries")),
        )
