"""SSH/SFTP session to the reMarkable tablet.

One :class:`RemoteSession` owns two sub-channels on a single asyncssh
connection: the SSH command channel and an SFTP client for file
transfers.  Commands and transfers on a session are single-flight; an
``asyncio.Lock`` serializes them so the deployment orchestrator and any
sync logic sharing the session never interleave.

A :class:`MockRemoteSession` is provided for tests.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

import asyncssh

from inkbridge.errors import (
    CommandError,
    CommandTimeoutError,
    DeviceConnectionError,
    DeviceNotConnectedError,
)
from inkbridge.events import ConnectionChanged, Subscribers

logger = logging.getLogger(__name__)

DEVICE_USERNAME = "root"
CONNECT_TIMEOUT = 10.0
COMMAND_TIMEOUT = 30.0


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_status: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


Connector = Callable[..., Awaitable[Any]]


class RemoteSession:
    """Command + file-transfer channel to one device."""

    def __init__(
        self,
        username: str = DEVICE_USERNAME,
        port: int = 22,
        connect_timeout: float = CONNECT_TIMEOUT,
        command_timeout: float = COMMAND_TIMEOUT,
        connector: Connector | None = None,
    ) -> None:
        self.username = username
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.host: str = ""
        self.connection_changed: Subscribers[ConnectionChanged] = Subscribers()
        self._connector = connector or asyncssh.connect
        self._conn: Any = None
        self._sftp: Any = None
        self._lock = asyncio.Lock()

    # ── Lifecycle ──────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        """Live transport state of the command channel."""
        conn = self._conn
        if conn is None:
            return False
        try:
            return not conn.is_closed()
        except Exception:
            return False

    async def connect(self, host: str, password: str) -> None:
        """Open the command and SFTP channels.

        Raises :class:`DeviceConnectionError` on any failure; both channels
        are released before raising.
        """
        logger.info("Attempting SSH connection to %s", host)
        await self.disconnect(notify=self.is_connected)

        self.host = host
        try:
            self._conn = await asyncio.wait_for(
                self._connector(
                    host,
                    port=self.port,
                    username=self.username,
                    password=password,
                    known_hosts=None,  # device host keys change on every firmware update
                    connect_timeout=self.connect_timeout,
                ),
                timeout=self.connect_timeout,
            )
            self._sftp = await asyncio.wait_for(
                self._conn.start_sftp_client(),
                timeout=self.connect_timeout,
            )
        except Exception as exc:
            logger.error("Failed to establish SSH connection to %s: %s", host, exc)
            await self.disconnect(notify=False)
            raise DeviceConnectionError(f"Failed to connect to {host}: {exc}") from exc

        logger.info("SSH connection to %s established", host)
        self.connection_changed.emit(ConnectionChanged(connected=True, host=host))

    async def disconnect(self, notify: bool = True) -> None:
        """Release both channels. Safe to call repeatedly."""
        sftp, conn = self._sftp, self._conn
        self._sftp = None
        self._conn = None

        if sftp is not None:
            try:
                sftp.exit()
                await sftp.wait_closed()
            except Exception as exc:
                logger.warning("Error closing SFTP channel: %s", exc)
        if conn is not None:
            try:
                conn.close()
                await conn.wait_closed()
            except Exception as exc:
                logger.warning("Error closing SSH connection: %s", exc)
            logger.info("SSH connection to %s closed", self.host)

        if notify:
            self.connection_changed.emit(ConnectionChanged(connected=False, host=self.host))

    async def __aenter__(self) -> "RemoteSession":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.disconnect()

    # ── Commands ───────────────────────────────────────────────────

    async def run(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run *command* and return stdout, stderr and exit status."""
        conn = self._require_conn()
        timeout = self.command_timeout if timeout is None else timeout
        logger.debug("Executing command: %s", command)

        async with self._lock:
            try:
                proc = await asyncio.wait_for(
                    conn.run(command, check=False), timeout=timeout
                )
            except asyncio.TimeoutError as exc:
                raise CommandTimeoutError(
                    f"Command timed out after {timeout:.0f}s: {command}"
                ) from exc
            except (OSError, asyncssh.Error) as exc:
                raise DeviceConnectionError(f"SSH channel failed: {exc}") from exc

        exit_status = proc.exit_status if proc.exit_status is not None else -1
        return CommandResult(
            stdout=_as_text(proc.stdout),
            stderr=_as_text(proc.stderr),
            exit_status=exit_status,
        )

    async def execute(self, command: str, timeout: float | None = None) -> str:
        """Run *command* and return its stdout.

        A non-zero exit with error output is logged, not raised; the
        caller decides whether the output matters.
        """
        result = await self.run(command, timeout=timeout)
        if not result.ok and result.stderr.strip():
            logger.warning("%s", CommandError(command, result.exit_status, result.stderr))
        return result.stdout

    # ── File transfer ──────────────────────────────────────────────

    async def upload_file(self, local_path: str | Path, remote_path: str) -> None:
        """Copy a local file to the device, overwriting; creates parent dirs."""
        sftp = self._require_sftp()
        logger.info("Uploading %s to %s", local_path, remote_path)

        async with self._lock:
            remote_dir = posixpath.dirname(remote_path)
            if remote_dir:
                await self._create_remote_directory(sftp, remote_dir)
            await sftp.put(str(local_path), remote_path)

        logger.info("Upload of %s completed", remote_path)

    async def download_file(self, remote_path: str, local_path: str | Path) -> None:
        """Copy a file from the device; creates the local parent directory."""
        sftp = self._require_sftp()
        logger.info("Downloading %s to %s", remote_path, local_path)

        local = Path(local_path)
        local.parent.mkdir(parents=True, exist_ok=True)
        async with self._lock:
            await sftp.get(remote_path, str(local))

        logger.info("Download of %s completed", remote_path)

    @staticmethod
    async def _create_remote_directory(sftp: Any, path: str) -> None:
        current = ""
        for part in [p for p in path.split("/") if p]:
            current = f"{current}/{part}"
            if not await sftp.exists(current):
                await sftp.mkdir(current)

    # ── Device helpers ─────────────────────────────────────────────

    async def check_service_status(self, service_name: str) -> bool:
        """True when ``systemctl is-active`` reports the unit as active."""
        try:
            status = await self.execute(f"systemctl is-active {service_name}")
        except (CommandTimeoutError, DeviceConnectionError):
            return False
        return status.strip() == "active"

    async def get_device_info(self) -> dict[str, str]:
        """Model, firmware version, serial, storage usage and agent version."""
        info: dict[str, str] = {}
        try:
            info["model"] = (await self.execute("cat /sys/devices/soc0/machine")).strip()
            info["version"] = (await self.execute("cat /usr/share/remarkable/version")).strip()
            info["serial"] = (await self.execute("cat /sys/devices/soc0/serial_number")).strip()

            lines = (await self.execute("df -h /home")).splitlines()
            if len(lines) > 1:
                parts = lines[1].split()
                if len(parts) >= 5:
                    info["storage_used"] = parts[2]
                    info["storage_available"] = parts[3]
                    info["storage_percent"] = parts[4]

            result = await self.run("cat /home/root/onenote-sync/version.json")
            info["sync_version"] = result.stdout.strip() if result.ok else "Not installed"
        except (CommandTimeoutError, DeviceConnectionError) as exc:
            logger.error("Error getting device info: %s", exc)
        return info

    async def enable_wifi(self) -> bool:
        """Bring up wlan0 so the session survives unplugging USB."""
        try:
            logger.info("Enabling WiFi over SSH for persistent connection")
            interfaces = await self.execute("ip link show")
            if "wlan0" not in interfaces:
                logger.warning("WiFi interface not found")
                return False

            await self.execute("ip link set wlan0 up")
            if not (await self.execute("pgrep wpa_supplicant")).strip():
                logger.info("Starting wpa_supplicant")
                await self.execute(
                    "wpa_supplicant -B -i wlan0 -c /etc/wpa_supplicant/wpa_supplicant.conf"
                )
            await self.execute("dhclient wlan0 2>/dev/null || true")

            wifi_ip = (await self.execute(
                "ip addr show wlan0 | grep 'inet ' | awk '{print $2}' | cut -d/ -f1"
            )).strip()
            logger.info("WiFi enabled: %s, IP: %s", bool(wifi_ip), wifi_ip)
            return bool(wifi_ip)
        except (CommandTimeoutError, DeviceConnectionError) as exc:
            logger.error("Failed to enable WiFi over SSH: %s", exc)
            return False

    # ── Internal ───────────────────────────────────────────────────

    def _require_conn(self) -> Any:
        if not self.is_connected:
            raise DeviceNotConnectedError("SSH client is not connected")
        return self._conn

    def _require_sftp(self) -> Any:
        if self._sftp is None or not self.is_connected:
            raise DeviceNotConnectedError("SFTP client is not connected")
        return self._sftp


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


# ── Test double ───────────────────────────────────────────────────


class MockRemoteSession:
    """In-memory stand-in for :class:`RemoteSession`.

    Commands are answered from *responses* (exact match first, then
    prefix match); anything else falls through to a tiny simulated
    device that understands ``test``, ``cat``, ``mkdir -p``, ``rm`` and
    ``systemctl start|stop|is-active``.  Unknown commands return empty
    output with exit 1.  Every command and transfer is recorded.
    ``fail_on`` maps a command or remote-path prefix to the exception it
    should raise.
    """

    def __init__(self, responses: dict[str, CommandResult] | None = None) -> None:
        self.responses = responses or {}
        self.commands: list[str] = []
        self.uploads: list[tuple[str, str]] = []
        self.remote_files: dict[str, bytes] = {}
        self.remote_dirs: set[str] = set()
        self.active_services: set[str] = set()
        self.fail_on: dict[str, Exception] = {}
        self.connected = True
        self.connection_changed: Subscribers[ConnectionChanged] = Subscribers()

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, host: str, password: str) -> None:
        self.connected = True
        self.connection_changed.emit(ConnectionChanged(connected=True, host=host))

    async def disconnect(self, notify: bool = True) -> None:
        self.connected = False
        if notify:
            self.connection_changed.emit(ConnectionChanged(connected=False))

    async def run(self, command: str, timeout: float | None = None) -> CommandResult:
        if not self.connected:
            raise DeviceNotConnectedError("SSH client is not connected")
        self.commands.append(command)
        for key, exc in self.fail_on.items():
            if command.startswith(key):
                raise exc
        if command in self.responses:
            return self.responses[command]
        for key, val in self.responses.items():
            if command.startswith(key):
                return val
        return self._filesystem(command)

    async def execute(self, command: str, timeout: float | None = None) -> str:
        return (await self.run(command, timeout)).stdout

    async def upload_file(self, local_path: str | Path, remote_path: str) -> None:
        if not self.connected:
            raise DeviceNotConnectedError("SFTP client is not connected")
        for key, exc in self.fail_on.items():
            if remote_path.startswith(key):
                raise exc
        self.uploads.append((str(local_path), remote_path))
        self.remote_files[remote_path] = Path(local_path).read_bytes()

    async def download_file(self, remote_path: str, local_path: str | Path) -> None:
        if not self.connected:
            raise DeviceNotConnectedError("SFTP client is not connected")
        if remote_path not in self.remote_files:
            raise FileNotFoundError(remote_path)
        local = Path(local_path)
        local.parent.mkdir(parents=True, exist_ok=True)
        local.write_bytes(self.remote_files[remote_path])

    async def check_service_status(self, service_name: str) -> bool:
        return (await self.execute(f"systemctl is-active {service_name}")).strip() == "active"

    def _filesystem(self, command: str) -> CommandResult:
        parts = command.split()
        if not parts:
            return CommandResult(exit_status=1)
        verb, args = parts[0], parts[1:]

        if verb == "test" and len(args) >= 2 and args[0] in ("-d", "-f"):
            path = args[1]
            found = path in self.remote_dirs if args[0] == "-d" else path in self.remote_files
            return CommandResult(stdout="exists\n" if found else "", exit_status=0 if found else 1)
        if verb == "cat" and len(args) == 1:
            data = self.remote_files.get(args[0])
            if data is None:
                return CommandResult(stderr=f"cat: {args[0]}: No such file", exit_status=1)
            return CommandResult(stdout=data.decode())
        if verb == "mkdir" and args[:1] == ["-p"]:
            self.remote_dirs.update(args[1:])
            return CommandResult()
        if verb == "rm" and args[:1] in (["-rf"], ["-f"]):
            for pattern in args[1:]:
                prefix = pattern.split("*")[0]
                self.remote_dirs = {d for d in self.remote_dirs if not d.startswith(prefix)}
                self.remote_files = {
                    p: v for p, v in self.remote_files.items() if not p.startswith(prefix)
                }
            return CommandResult()
        if verb == "systemctl" and len(args) == 2:
            action, unit = args
            if action == "start":
                self.active_services.add(unit)
            elif action == "stop":
                self.active_services.discard(unit)
            elif action == "is-active":
                active = unit in self.active_services
                return CommandResult(
                    stdout="active\n" if active else "inactive\n",
                    exit_status=0 if active else 3,
                )
            return CommandResult()
        if verb == "systemctl" and args == ["daemon-reload"]:
            return CommandResult()
        if verb in ("chmod", "mount", "umount"):
            return CommandResult()
        return CommandResult(exit_status=1)
