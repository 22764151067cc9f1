"""Device session manager.

Owns the single live :class:`RemoteSession` and reacts to presence
events from whatever watches for the tablet (USB hotplug, network scan,
manual connect).  Deployment operations run through here so that the
orchestrator and sync logic never issue concurrent commands.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from inkbridge.config import Settings
from inkbridge.device.deployment import DeploymentOrchestrator, DeploymentResult
from inkbridge.device.session import RemoteSession
from inkbridge.errors import DeviceConnectionError, DeviceNotConnectedError
from inkbridge.events import ConnectionChanged, Subscribers

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 1.0


async def probe_device(host: str, port: int = 22, timeout: float = PROBE_TIMEOUT) -> bool:
    """True when something accepts a TCP connection on *host*:*port*."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class DeviceManager:
    """Central manager for the connected tablet."""

    def __init__(
        self,
        settings: Settings | None = None,
        orchestrator: DeploymentOrchestrator | None = None,
        session_factory: Callable[[], RemoteSession] | None = None,
        probe: Callable[..., Awaitable[bool]] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.orchestrator = orchestrator or DeploymentOrchestrator(self.settings)
        self._session_factory = session_factory or self._default_session
        self._probe = probe or probe_device
        self.connection_changed: Subscribers[ConnectionChanged] = Subscribers()
        self._session: RemoteSession | None = None
        self._lock = asyncio.Lock()

    @property
    def session(self) -> RemoteSession | None:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self._session.is_connected

    # ── Presence events ────────────────────────────────────────────

    async def on_device_changed(self, connected: bool, host: str | None = None) -> bool:
        """Handle a presence event. Returns whether a session is now live."""
        if not connected:
            logger.info("Device removed")
            await self.disconnect()
            return False
        return await self.connect(host or self.settings.device_host)

    async def connect(self, host: str, password: str | None = None) -> bool:
        if not await self._probe(host, 22, PROBE_TIMEOUT):
            logger.warning("Device at %s is not reachable on port 22", host)
            return False

        async with self._lock:
            if self._session is not None:
                await self._session.disconnect(notify=False)
            session = self._session_factory()
            session.connection_changed.subscribe(self.connection_changed.emit)
            try:
                if password is None:
                    password = self.settings.device_password
                await session.connect(host, password)
            except DeviceConnectionError as e:
                logger.error("Could not open session to %s: %s", host, e)
                self._session = None
                return False
            self._session = session
        logger.info("Device session to %s ready", host)
        return True

    async def disconnect(self) -> None:
        async with self._lock:
            session, self._session = self._session, None
            if session is not None:
                await session.disconnect()

    # ── Deployment ─────────────────────────────────────────────────

    async def check_installation(self) -> DeploymentResult:
        async with self._lock:
            return await self.orchestrator.check_installation(self._require_session())

    async def deploy(self) -> DeploymentResult:
        async with self._lock:
            return await self.orchestrator.deploy(self._require_session())

    async def update(self) -> DeploymentResult:
        async with self._lock:
            return await self.orchestrator.update(self._require_session())

    async def uninstall(self) -> DeploymentResult:
        async with self._lock:
            return await self.orchestrator.uninstall(self._require_session())

    # ── Internal ───────────────────────────────────────────────────

    def _require_session(self) -> RemoteSession:
        if self._session is None or not self._session.is_connected:
            raise DeviceNotConnectedError("No device session")
        return self._session

    def _default_session(self) -> RemoteSession:
        return RemoteSession(
            connect_timeout=self.settings.connect_timeout,
            command_timeout=self.settings.command_timeout,
        )
