"""Exception hierarchy for the sync pipeline."""

from __future__ import annotations


class InkBridgeError(Exception):
    """Base error for all InkBridge failures."""


# ── Remote session ────────────────────────────────────────────────


class DeviceConnectionError(InkBridgeError):
    """Raised when the device is unreachable or rejects authentication."""


class DeviceNotConnectedError(InkBridgeError):
    """Raised when a command or transfer is issued on a closed session."""


class CommandTimeoutError(InkBridgeError):
    """Raised when a remote command exceeds its timeout."""


class CommandError(InkBridgeError):
    """A remote command exited non-zero.

    Not raised by :meth:`RemoteSession.execute`; built for logging and
    for callers that choose to treat the exit status as fatal.
    """

    def __init__(self, command: str, exit_status: int, stderr: str = "") -> None:
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        super().__init__(
            f"Command {command!r} exited with {exit_status}: {stderr.strip()}"
        )


# ── Deployment ────────────────────────────────────────────────────


class DeploymentStageError(InkBridgeError):
    """A deployment stage failed; the whole deploy is aborted."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        self.message = message
        super().__init__(f"{stage}: {message}")


# ── Ingestion ─────────────────────────────────────────────────────


class IngestionValidationError(InkBridgeError):
    """An upload request was rejected before any page was stored."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


# ── Cloud notebook service ────────────────────────────────────────


class CloudClientError(InkBridgeError):
    """Base error for cloud notebook client failures."""


class CloudConnectionError(CloudClientError):
    """Raised when the cloud service is network-unreachable."""


class CloudAuthError(CloudClientError):
    """Raised when no access token is available or the service returns 401/403."""
