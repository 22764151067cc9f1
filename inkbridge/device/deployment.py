"""Deployment of the sync agent onto the reMarkable.

Stages, always reported in this order:

  1. checking: probe for an existing install
  2. preparing_files: remount rootfs rw, create directory tree
  3. uploading_binaries: push agent binaries, mark executable
  4. configuring_services: write agent configs, manifest and systemd units
  5. starting_services: daemon-reload, enable, start
  6. verifying: re-run the installation check
  7. complete

A failing stage aborts the deploy with ``success=False`` and the error
surfaced; nothing is rolled back.  Every step overwrites what it finds,
so running :meth:`DeploymentOrchestrator.deploy` again is the recovery
path.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from inkbridge.config import Settings
from inkbridge.device.session import CommandResult
from inkbridge.errors import CommandError, DeploymentStageError
from inkbridge.events import DeploymentProgress, Subscribers

logger = logging.getLogger(__name__)

REMOTE_BASE_PATH = "/home/root/onenote-sync"
SYSTEMD_DIR = "/etc/systemd/system"
AGENT_VERSION = "1.0.0"
CACHE_FORMAT = "2"

WATCHER_SERVICE = "onenote-sync-watcher"
HTTPCLIENT_SERVICE = "onenote-sync-httpclient"
SERVICES = {"watcher": WATCHER_SERVICE, "httpclient": HTTPCLIENT_SERVICE}

CONFIG_FILES = ("watcher.conf", "httpclient.conf")

# Local file name -> remote sub-directory
AGENT_BINARIES = {
    "watcher": "bin",
    "httpclient": "bin",
    "cache_debug": "bin",
    "watcher_profiler.sh": "debug",
}


class DeploymentStage(str, Enum):
    CHECKING = "checking"
    PREPARING_FILES = "preparing_files"
    UPLOADING_BINARIES = "uploading_binaries"
    CONFIGURING_SERVICES = "configuring_services"
    STARTING_SERVICES = "starting_services"
    VERIFYING = "verifying"
    COMPLETE = "complete"


@dataclass
class DeploymentResult:
    success: bool = False
    is_installed: bool = False
    installed_version: str | None = None
    error_message: str | None = None
    component_status: dict[str, bool] = field(default_factory=dict)
    backup_ok: bool | None = None
    restore_ok: bool | None = None


class DeviceSession(Protocol):
    """What the orchestrator needs from a session, real or mock."""

    async def run(self, command: str, timeout: float | None = None) -> CommandResult:
        ...

    async def execute(self, command: str, timeout: float | None = None) -> str:
        ...

    async def upload_file(self, local_path: str | Path, remote_path: str) -> None:
        ...

    async def download_file(self, remote_path: str, local_path: str | Path) -> None:
        ...


class DeploymentOrchestrator:
    """Installs, updates, verifies and removes the on-device agent."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self.progress: Subscribers[DeploymentProgress] = Subscribers()

    # ── Installation check ─────────────────────────────────────────

    async def check_installation(self, session: DeviceSession) -> DeploymentResult:
        """Report whether the agent is installed and which parts are healthy."""
        self._report(DeploymentStage.CHECKING, 0.1, "Checking existing installation...")
        try:
            return await self._inspect(session)
        except Exception as e:
            logger.error("Failed to check installation: %s", e)
            return DeploymentResult(success=False, error_message=str(e))

    async def _inspect(self, session: DeviceSession) -> DeploymentResult:
        result = DeploymentResult()

        marker = await session.execute(f"test -d {REMOTE_BASE_PATH} && echo 'exists'")
        if "exists" not in marker:
            result.is_installed = False
            result.success = True
            return result

        result.is_installed = True
        manifest = await session.run(f"cat {REMOTE_BASE_PATH}/version.json")
        result.installed_version = _parse_version(manifest.stdout) if manifest.ok else "Unknown"

        for component, service in SERVICES.items():
            result.component_status[component] = await _service_active(session, service)
        result.component_status["cache"] = await _file_exists(
            session, f"{REMOTE_BASE_PATH}/cache/.sync_cache"
        )

        result.success = True
        return result

    # ── Deploy ─────────────────────────────────────────────────────

    async def deploy(self, session: DeviceSession) -> DeploymentResult:
        """Run every stage; success requires all of them plus a passing verify."""
        result = DeploymentResult()
        try:
            self._report(DeploymentStage.CHECKING, 0.0, "Checking existing installation...")
            await self._stage(DeploymentStage.CHECKING, self._log_existing, session)
            self._report(DeploymentStage.PREPARING_FILES, 0.0, "Starting deployment...")

            await self._stage(DeploymentStage.PREPARING_FILES, self._prepare_filesystem, session)
            self._report(DeploymentStage.PREPARING_FILES, 0.2, "Filesystem prepared")

            await self._stage(DeploymentStage.PREPARING_FILES, self._create_directories, session)
            self._report(DeploymentStage.PREPARING_FILES, 0.3, "Directory structure created")

            await self._stage(DeploymentStage.UPLOADING_BINARIES, self._upload_binaries, session)
            self._report(DeploymentStage.UPLOADING_BINARIES, 0.5, "Binaries uploaded")

            await self._stage(DeploymentStage.CONFIGURING_SERVICES, self._write_configuration, session)
            self._report(DeploymentStage.CONFIGURING_SERVICES, 0.6, "Configuration uploaded")

            await self._stage(DeploymentStage.CONFIGURING_SERVICES, self._install_services, session)
            self._report(DeploymentStage.CONFIGURING_SERVICES, 0.8, "Services installed")

            await self._stage(DeploymentStage.STARTING_SERVICES, self._start_services, session)
            self._report(DeploymentStage.STARTING_SERVICES, 0.9, "Services started")

            self._report(DeploymentStage.VERIFYING, 0.95, "Verifying installation...")
            check = await self._stage(DeploymentStage.VERIFYING, self._inspect, session)
            result.is_installed = check.is_installed
            result.installed_version = check.installed_version
            result.component_status = check.component_status
            result.success = check.success and check.is_installed
            if not result.success:
                result.error_message = "Verification did not find the installation"

            self._report(
                DeploymentStage.COMPLETE,
                1.0,
                "Deployment complete!" if result.success else "Deployment could not be verified",
            )
        except DeploymentStageError as e:
            logger.error("Deployment failed at %s: %s", e.stage, e.message)
            result.success = False
            result.error_message = str(e)
            self._report(DeploymentStage.COMPLETE, 0.0, f"Deployment failed: {e}")

        return result

    async def _log_existing(self, session: DeviceSession) -> None:
        existing = await self._inspect(session)
        if existing.is_installed:
            logger.info("Found existing installation (version %s)", existing.installed_version)

    async def _prepare_filesystem(self, session: DeviceSession) -> None:
        await _run_checked(session, "mount -o remount,rw /")
        # /etc is only sometimes a separate mount
        await session.run("umount /etc -l")

    async def _create_directories(self, session: DeviceSession) -> None:
        for sub in ("", "/bin", "/cache", "/logs", "/debug"):
            await _run_checked(session, f"mkdir -p {REMOTE_BASE_PATH}{sub}")

    async def _upload_binaries(self, session: DeviceSession) -> None:
        for name, subdir in AGENT_BINARIES.items():
            local = self.settings.binaries_dir / name
            remote = f"{REMOTE_BASE_PATH}/{subdir}/{name}"
            if not local.exists():
                logger.warning("Binary not found: %s", local)
                continue
            await session.upload_file(local, remote)
            await _run_checked(session, f"chmod +x {remote}")

    async def _write_configuration(self, session: DeviceSession) -> None:
        await _write_remote_text(session, f"{REMOTE_BASE_PATH}/watcher.conf", self.watcher_config())
        await _write_remote_text(session, f"{REMOTE_BASE_PATH}/httpclient.conf", self.httpclient_config())
        await _write_remote_text(session, f"{REMOTE_BASE_PATH}/version.json", version_manifest())

    async def _install_services(self, session: DeviceSession) -> None:
        await _write_remote_text(session, f"{SYSTEMD_DIR}/{WATCHER_SERVICE}.service", _WATCHER_UNIT)
        await _write_remote_text(session, f"{SYSTEMD_DIR}/{HTTPCLIENT_SERVICE}.service", _HTTPCLIENT_UNIT)
        await _run_checked(session, "systemctl daemon-reload")
        for service in SERVICES.values():
            await _run_checked(session, f"systemctl enable {service}")

    async def _start_services(self, session: DeviceSession) -> None:
        for service in SERVICES.values():
            await _run_checked(session, f"systemctl start {service}")

    # ── Update / uninstall ─────────────────────────────────────────

    async def update(self, session: DeviceSession) -> DeploymentResult:
        """Redeploy while keeping the device's agent configuration."""
        backup_dir = Path(tempfile.mkdtemp(prefix="inkbridge-backup-"))
        backup_prefix = str(backup_dir / "agent")
        try:
            backup_ok = await self.backup_configuration(session, backup_prefix)
            if not backup_ok:
                logger.warning("Configuration backup failed; continuing with deploy")

            result = await self.deploy(session)

            restore_ok = await self.restore_configuration(session, backup_prefix)
            if not restore_ok:
                logger.warning("Configuration restore failed")

            result.backup_ok = backup_ok
            result.restore_ok = restore_ok
            return result
        finally:
            shutil.rmtree(backup_dir, ignore_errors=True)

    async def uninstall(self, session: DeviceSession) -> DeploymentResult:
        """Stop and remove everything the deploy created. Best-effort."""
        result = DeploymentResult()
        try:
            for service in SERVICES.values():
                await session.run(f"systemctl stop {service}")
            for service in SERVICES.values():
                await session.run(f"systemctl disable {service}")
            await session.run(f"rm -f {SYSTEMD_DIR}/onenote-sync-*.service")
            await session.run("systemctl daemon-reload")
            await session.run(f"rm -rf {REMOTE_BASE_PATH}")
            result.success = True
            result.is_installed = False
            logger.info("Agent uninstalled")
        except Exception as e:
            logger.error("Uninstall failed: %s", e)
            result.success = False
            result.error_message = str(e)
        return result

    async def backup_configuration(self, session: DeviceSession, local_prefix: str) -> bool:
        """Download the agent config files to ``{local_prefix}.{name}``."""
        try:
            for name in CONFIG_FILES:
                await session.download_file(
                    f"{REMOTE_BASE_PATH}/{name}", f"{local_prefix}.{name}"
                )
            return True
        except Exception as e:
            logger.warning("Configuration backup failed: %s", e)
            return False

    async def restore_configuration(self, session: DeviceSession, local_prefix: str) -> bool:
        """Upload any config files previously saved by :meth:`backup_configuration`."""
        try:
            for name in CONFIG_FILES:
                local = Path(f"{local_prefix}.{name}")
                if local.exists():
                    await session.upload_file(local, f"{REMOTE_BASE_PATH}/{name}")
            return True
        except Exception as e:
            logger.warning("Configuration restore failed: %s", e)
            return False

    # ── Agent configuration ────────────────────────────────────────

    def watcher_config(self) -> str:
        return (
            "WATCH_PATH=/home/root/.local/share/remarkable/xochitl\n"
            f"LOG_PATH={REMOTE_BASE_PATH}/logs/watcher.log\n"
            f"CACHE_PATH={REMOTE_BASE_PATH}/cache/.sync_cache\n"
        )

    def httpclient_config(self) -> str:
        return (
            f"SERVER_URL={self.settings.upload_url}\n"
            f"API_KEY={self.settings.api_key}\n"
            "SHARED_PATH=*\n"
            "UPLOAD_INTERVAL=30\n"
            f"MAX_RETRIES={self.settings.max_retries}\n"
            "RETRY_DELAY=20\n"
            "TIMEOUT=10\n"
        )

    # ── Internal ───────────────────────────────────────────────────

    async def _stage(
        self,
        stage: DeploymentStage,
        step: Callable[[DeviceSession], Awaitable[Any]],
        session: DeviceSession,
    ) -> Any:
        try:
            return await step(session)
        except DeploymentStageError:
            raise
        except Exception as e:
            raise DeploymentStageError(stage.value, str(e)) from e

    def _report(self, stage: DeploymentStage, progress: float, message: str) -> None:
        logger.info("%s: %s (%.0f%%)", stage.value, message, progress * 100)
        self.progress.emit(DeploymentProgress(stage=stage.value, progress=progress, message=message))


# ── Helpers ───────────────────────────────────────────────────────


async def _run_checked(session: DeviceSession, command: str) -> CommandResult:
    result = await session.run(command)
    if not result.ok:
        raise CommandError(command, result.exit_status, result.stderr)
    return result


async def _write_remote_text(session: DeviceSession, remote_path: str, content: str) -> None:
    fd, tmp = tempfile.mkstemp(prefix="inkbridge-", suffix=os.path.basename(remote_path))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        await session.upload_file(tmp, remote_path)
    finally:
        os.unlink(tmp)


async def _service_active(session: DeviceSession, service: str) -> bool:
    result = await session.run(f"systemctl is-active {service}")
    return result.stdout.strip() == "active"


async def _file_exists(session: DeviceSession, path: str) -> bool:
    return "exists" in await session.execute(f"test -f {path} && echo 'exists'")


def _parse_version(manifest: str) -> str:
    try:
        version = json.loads(manifest).get("version")
    except (ValueError, AttributeError):
        return "Unknown"
    return str(version) if version else "Unknown"


def version_manifest() -> str:
    return json.dumps(
        {
            "version": AGENT_VERSION,
            "installed_date": datetime.now(timezone.utc).isoformat(),
            "components": {
                "watcher": AGENT_VERSION,
                "httpclient": AGENT_VERSION,
                "cache_format": CACHE_FORMAT,
            },
        },
        indent=2,
    )


# ── Systemd unit templates ────────────────────────────────────────

_WATCHER_UNIT = f"""\
[Unit]
Description=reMarkable Sync Watcher
After=home.mount

[Service]
Type=simple
ExecStart={REMOTE_BASE_PATH}/bin/watcher
Restart=on-failure
RestartSec=10
User=root

[Install]
WantedBy=multi-user.target
"""

_HTTPCLIENT_UNIT = f"""\
[Unit]
Description=reMarkable Sync HTTP Client
After=home.mount network.target
Wants={WATCHER_SERVICE}.service

[Service]
Type=simple
ExecStart={REMOTE_BASE_PATH}/bin/httpclient
Restart=on-failure
RestartSec=30
User=root

[Install]
WantedBy=multi-user.target
"""
