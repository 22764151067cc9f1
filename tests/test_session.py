"""Tests for the SSH/SFTP session channel (asyncssh replaced by fakes)."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from inkbridge.device.session import CommandResult, MockRemoteSession, RemoteSession
from inkbridge.errors import (
    CommandTimeoutError,
    DeviceConnectionError,
    DeviceNotConnectedError,
)


# ── Fakes ─────────────────────────────────────────────────────────


class FakeSFTP:
    def __init__(self):
        self.dirs: set[str] = {"/", "/home", "/home/root"}
        self.files: dict[str, bytes] = {}
        self.closed = False

    async def exists(self, path):
        return path in self.dirs or path in self.files

    async def mkdir(self, path):
        self.dirs.add(path)

    async def put(self, local, remote):
        with open(local, "rb") as fh:
            self.files[remote] = fh.read()

    async def get(self, remote, local):
        with open(local, "wb") as fh:
            fh.write(self.files[remote])

    def exit(self):
        self.closed = True

    async def wait_closed(self):
        pass


class FakeConnection:
    def __init__(self, responses=None, sftp_error=None, delay=0.0):
        self.responses = responses or {}
        self.sftp = FakeSFTP()
        self.sftp_error = sftp_error
        self.delay = delay
        self.closed = False
        self.commands: list[str] = []

    async def start_sftp_client(self):
        if self.sftp_error is not None:
            raise self.sftp_error
        return self.sftp

    async def run(self, command, check=False):
        self.commands.append(command)
        if self.delay:
            await asyncio.sleep(self.delay)
        stdout, stderr, status = self.responses.get(command, ("", "", 0))
        return SimpleNamespace(stdout=stdout, stderr=stderr, exit_status=status)

    def is_closed(self):
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def _connector(conn):
    calls = []

    async def connect(host, **kwargs):
        calls.append((host, kwargs))
        return conn

    connect.calls = calls
    return connect


# ── Connect / disconnect ──────────────────────────────────────────


class TestLifecycle:
    async def test_connect_opens_both_channels(self):
        conn = FakeConnection()
        connector = _connector(conn)
        session = RemoteSession(connector=connector)
        events = []
        session.connection_changed.subscribe(events.append)

        await session.connect("10.11.99.1", "secret")

        assert session.is_connected is True
        host, kwargs = connector.calls[0]
        assert host == "10.11.99.1"
        assert kwargs["username"] == "root"
        assert kwargs["password"] == "secret"
        assert kwargs["port"] == 22
        assert [e.connected for e in events] == [True]

    async def test_reconnect_reports_old_host_closed(self):
        first, second = FakeConnection(), FakeConnection()
        conns = iter([first, second])

        async def connect(host, **kwargs):
            return next(conns)

        session = RemoteSession(connector=connect)
        events = []
        session.connection_changed.subscribe(events.append)

        await session.connect("10.11.99.1", "secret")
        await session.connect("192.168.1.20", "secret")

        assert first.closed is True
        assert [(e.connected, e.host) for e in events] == [
            (True, "10.11.99.1"),
            (False, "10.11.99.1"),
            (True, "192.168.1.20"),
        ]

    async def test_failed_connect_raises_and_leaves_nothing_open(self):
        async def refuse(host, **kwargs):
            raise OSError("connection refused")

        session = RemoteSession(connector=refuse)
        with pytest.raises(DeviceConnectionError):
            await session.connect("10.11.99.1", "secret")
        assert session.is_connected is False

    async def test_sftp_failure_releases_command_channel(self):
        conn = FakeConnection(sftp_error=OSError("no sftp subsystem"))
        session = RemoteSession(connector=_connector(conn))
        with pytest.raises(DeviceConnectionError):
            await session.connect("10.11.99.1", "secret")
        assert conn.closed is True
        assert session.is_connected is False

    async def test_is_connected_tracks_transport(self):
        conn = FakeConnection()
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        conn.closed = True  # transport dropped underneath us
        assert session.is_connected is False

    async def test_disconnect_is_idempotent(self):
        conn = FakeConnection()
        session = RemoteSession(connector=_connector(conn))
        events = []
        session.connection_changed.subscribe(events.append)
        await session.connect("h", "p")

        await session.disconnect()
        await session.disconnect()

        assert conn.closed is True
        assert conn.sftp.closed is True
        assert session.is_connected is False
        assert [e.connected for e in events] == [True, False, False]

    async def test_disconnect_without_connect(self):
        session = RemoteSession(connector=_connector(FakeConnection()))
        await session.disconnect()
        assert session.is_connected is False


# ── Commands ──────────────────────────────────────────────────────


class TestCommands:
    async def test_execute_returns_stdout(self):
        conn = FakeConnection({"uname -a": ("Linux reMarkable\n", "", 0)})
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        assert await session.execute("uname -a") == "Linux reMarkable\n"

    async def test_nonzero_exit_is_logged_not_raised(self, caplog):
        conn = FakeConnection({"false": ("partial", "it broke", 1)})
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        assert await session.execute("false") == "partial"
        assert "it broke" in caplog.text

    async def test_run_reports_exit_status(self):
        conn = FakeConnection({"test -d /x": ("", "", 1)})
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        result = await session.run("test -d /x")
        assert result.exit_status == 1
        assert result.ok is False

    async def test_execute_when_disconnected_raises(self):
        session = RemoteSession(connector=_connector(FakeConnection()))
        with pytest.raises(DeviceNotConnectedError):
            await session.execute("ls")

    async def test_timeout_raises(self):
        conn = FakeConnection(delay=0.5)
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        with pytest.raises(CommandTimeoutError):
            await session.run("sleep 10", timeout=0.05)

    async def test_commands_are_serialized(self):
        conn = FakeConnection(delay=0.01)
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        active = 0
        peak = 0
        original = conn.run

        async def tracking_run(command, check=False):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                return await original(command, check=check)
            finally:
                active -= 1

        conn.run = tracking_run
        await asyncio.gather(*(session.run(f"echo {i}") for i in range(5)))
        assert peak == 1


# ── File transfer ─────────────────────────────────────────────────


class TestTransfers:
    async def test_upload_creates_missing_directories(self, tmp_path):
        conn = FakeConnection()
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        local = tmp_path / "watcher"
        local.write_bytes(b"\x7fELF")

        await session.upload_file(local, "/home/root/onenote-sync/bin/watcher")

        assert "/home/root/onenote-sync" in conn.sftp.dirs
        assert "/home/root/onenote-sync/bin" in conn.sftp.dirs
        assert conn.sftp.files["/home/root/onenote-sync/bin/watcher"] == b"\x7fELF"

    async def test_upload_overwrites(self, tmp_path):
        conn = FakeConnection()
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        local = tmp_path / "conf"
        local.write_text("A=1")
        await session.upload_file(local, "/home/root/a.conf")
        local.write_text("A=2")
        await session.upload_file(local, "/home/root/a.conf")
        assert conn.sftp.files["/home/root/a.conf"] == b"A=2"

    async def test_download_creates_local_parent(self, tmp_path):
        conn = FakeConnection()
        conn.sftp.files["/home/root/onenote-sync/watcher.conf"] = b"WATCH_PATH=/x\n"
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        target = tmp_path / "backup" / "nested" / "watcher.conf"

        await session.download_file("/home/root/onenote-sync/watcher.conf", target)

        assert target.read_text() == "WATCH_PATH=/x\n"


# ── Device helpers ────────────────────────────────────────────────


class TestDeviceHelpers:
    async def test_check_service_status(self):
        conn = FakeConnection({
            "systemctl is-active onenote-sync-watcher": ("active\n", "", 0),
            "systemctl is-active onenote-sync-httpclient": ("inactive\n", "", 3),
        })
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        assert await session.check_service_status("onenote-sync-watcher") is True
        assert await session.check_service_status("onenote-sync-httpclient") is False

    async def test_get_device_info(self):
        conn = FakeConnection({
            "cat /sys/devices/soc0/machine": ("reMarkable 2.0\n", "", 0),
            "cat /usr/share/remarkable/version": ("3.5.2\n", "", 0),
            "cat /sys/devices/soc0/serial_number": ("RM110-000\n", "", 0),
            "df -h /home": (
                "Filesystem Size Used Avail Use% Mounted on\n"
                "/dev/mmcblk2p4 6.4G 1.2G 4.9G 20% /home\n",
                "",
                0,
            ),
            "cat /home/root/onenote-sync/version.json": ("", "No such file", 1),
        })
        session = RemoteSession(connector=_connector(conn))
        await session.connect("h", "p")
        info = await session.get_device_info()
        assert info["model"] == "reMarkable 2.0"
        assert info["version"] == "3.5.2"
        assert info["storage_used"] == "1.2G"
        assert info["storage_percent"] == "20%"
        assert info["sync_version"] == "Not installed"


class TestMockSession:
    async def test_prefix_responses(self):
        mock = MockRemoteSession({"cat /etc/": CommandResult(stdout="hello")})
        assert await mock.execute("cat /etc/hostname") == "hello"
        assert mock.commands == ["cat /etc/hostname"]

    async def test_simulated_filesystem(self):
        mock = MockRemoteSession()
        await mock.run("mkdir -p /home/root/x")
        assert "exists" in await mock.execute("test -d /home/root/x && echo 'exists'")
        await mock.run("rm -rf /home/root/x")
        assert await mock.execute("test -d /home/root/x && echo 'exists'") == ""
