"""Subscriber fan-out and the event types published by the session core."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


def log_task_failure(task: asyncio.Task) -> None:
    """Done-callback for fire-and-forget tasks: log the exception instead of losing it."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task failed: %s", exc, exc_info=exc)


class Listeners:
    """An ordered set of callbacks.

    ``add()`` returns an unsubscribe function. ``emit()`` calls every
    callback in subscription order; an exception raised by one callback is
    logged and does not stop delivery to the rest.
    """

    def __init__(self, name: str = "listener"):
        self._name = name
        self._callbacks: list[Callable[..., Any]] = []

    def add(self, callback: Callable[..., Any]) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    def emit(self, *args: Any) -> None:
        # Copy so callbacks may unsubscribe themselves mid-dispatch
        for callback in list(self._callbacks):
            try:
                callback(*args)
            except Exception:
                logger.exception("Error in %s callback", self._name)

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)


# ------------------------------------------------------------------
# Resync
# ------------------------------------------------------------------

class ResyncReason(str, Enum):
    VISIBILITY = "visibility"
    FOCUS = "focus"
    RECONNECT = "reconnect"


@dataclass(frozen=True)
class ResyncRequested:
    """Internal signal: authoritative state may have been missed."""
    reason: ResyncReason


# ------------------------------------------------------------------
# Session events (published by GameSessionReconciler)
# ------------------------------------------------------------------

@dataclass(frozen=True)
class PhaseChanged:
    previous: Any
    current: Any


@dataclass(frozen=True)
class SnapshotApplied:
    snapshot: Any


@dataclass(frozen=True)
class GameEnded:
    result: Any


@dataclass(frozen=True)
class ResignTimedOut:
    identity: Any


@dataclass(frozen=True)
class ConnectionLost:
    """Terminal: reconnect attempts are exhausted and the user must act."""
    attempts: int
    reason: str


@dataclass(frozen=True)
class ServerErrorReceived:
    """An ``error`` message from the server, after local state was adjusted."""
    code: str
    message: str
