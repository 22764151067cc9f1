"""Typed notifications raised by the pipeline.

Each producer owns one :class:`Subscribers` per event type; consumers
register a callback with :meth:`Subscribers.subscribe`.  A failing
callback is logged and never interrupts the producer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E")


class Subscribers(Generic[E]):
    """Observer registry for a single event type."""

    def __init__(self) -> None:
        self._callbacks: list[Callable[[E], None]] = []

    def subscribe(self, callback: Callable[[E], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def emit(self, event: E) -> None:
        for cb in list(self._callbacks):
            try:
                cb(event)
            except Exception:
                logger.exception("Error in %s subscriber", type(event).__name__)

    def __len__(self) -> int:
        return len(self._callbacks)


# ── Event types ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ConnectionChanged:
    connected: bool
    host: str = ""


@dataclass(frozen=True)
class DeploymentProgress:
    stage: str
    progress: float  # 0.0 – 1.0
    message: str


@dataclass(frozen=True)
class PageReceived:
    document_id: str
    page_id: str
    virtual_path: str
    local_path: str
    size: int
    received_at: datetime


@dataclass(frozen=True)
class SyncProgress:
    message: str
    total: int
    processed: int
    current_item: str | None = None

    @property
    def percentage(self) -> float:
        return (self.processed * 100.0 / self.total) if self.total > 0 else 0.0


@dataclass(frozen=True)
class SyncCompleted:
    success: bool
    synced: int
    failed: int
    duration_s: float
    error: str | None = None
