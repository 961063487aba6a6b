"""Server-authoritative clock reconciliation.

The server periodically pushes a clock reading. The client never counts
down on its own; the display value is recomputed from the latest reading on
every tick:

    now       = local_now + offset          (estimate of server time)
    elapsed   = now - server_now_at_snapshot
    remaining = max(0, remaining_at_snapshot - elapsed)   (running side only)

``offset`` is captured when the reading arrives (``server_now - local_now``)
so a client whose wall clock is wrong still ticks in step with the server.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from .config import (
    BASE_TIME_MS,
    CLOCK_TICK_SECONDS,
    CRITICAL_TIME_THRESHOLD_MS,
    LOW_TIME_THRESHOLD_MS,
)
from .messages import ClockFields
from .models import Side

logger = logging.getLogger(__name__)


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class TimerSnapshot:
    first_remaining_ms: int
    second_remaining_ms: int
    server_now: int
    offset_ms: int
    running: Side | None
    captured_at: int

    @classmethod
    def from_clock(
        cls,
        fields: ClockFields,
        local_now: int,
        fallback_turn: Side = Side.FIRST,
    ) -> "TimerSnapshot":
        """Build a snapshot from a server clock reading received at *local_now*."""
        if fields.w_ms is not None:
            first = fields.w_ms
        else:
            first = int((fields.white_time if fields.white_time is not None else BASE_TIME_MS / 1000) * 1000)
        if fields.b_ms is not None:
            second = fields.b_ms
        else:
            second = int((fields.black_time if fields.black_time is not None else BASE_TIME_MS / 1000) * 1000)

        turn = Side.from_wire(fields.turn or fields.current_turn) or fallback_turn
        server_now = next(
            (v for v in (fields.server_now, fields.server_time_ms) if v is not None),
            local_now,
        )
        return cls(
            first_remaining_ms=first,
            second_remaining_ms=second,
            server_now=server_now,
            offset_ms=server_now - local_now,
            running=turn if fields.clock_running else None,
            captured_at=local_now,
        )

    def remaining_at_snapshot(self, side: Side) -> int:
        return self.first_remaining_ms if side is Side.FIRST else self.second_remaining_ms


@dataclass(frozen=True)
class ClockDisplay:
    first_ms: int
    second_ms: int
    running: Side | None

    def remaining(self, side: Side) -> int:
        return self.first_ms if side is Side.FIRST else self.second_ms

    def is_low(self, side: Side) -> bool:
        return self.remaining(side) <= LOW_TIME_THRESHOLD_MS

    def is_critical(self, side: Side) -> bool:
        return self.remaining(side) <= CRITICAL_TIME_THRESHOLD_MS

    @property
    def expired_side(self) -> Side | None:
        """The running side whose derived time has reached zero, if any."""
        if self.running is not None and self.remaining(self.running) <= 0:
            return self.running
        return None


class TimerReconciler:
    """Holds the latest clock snapshot for one session and derives the display.

    Carries no state across sessions: ``reset()`` is called whenever the
    game identity changes and puts both sides back at the base time until
    the first real snapshot arrives.
    """

    def __init__(
        self,
        *,
        base_time_ms: int = BASE_TIME_MS,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.base_time_ms = base_time_ms
        self._clock = clock
        self._snapshot: TimerSnapshot | None = None

    @property
    def snapshot(self) -> TimerSnapshot | None:
        return self._snapshot

    def now(self) -> int:
        return self._clock()

    def reset(self) -> None:
        self._snapshot = None

    def apply(self, snapshot: TimerSnapshot) -> None:
        """Replace the current snapshot. Readings are never merged."""
        self._snapshot = snapshot

    def freeze(self) -> None:
        """Stop the running side at its current derived value (game over)."""
        snap = self._snapshot
        if snap is None or snap.running is None:
            return
        local_now = self._clock()
        self._snapshot = TimerSnapshot(
            first_remaining_ms=self.remaining(Side.FIRST),
            second_remaining_ms=self.remaining(Side.SECOND),
            server_now=local_now + snap.offset_ms,
            offset_ms=snap.offset_ms,
            running=None,
            captured_at=local_now,
        )

    def receive(self, fields: ClockFields, fallback_turn: Side = Side.FIRST) -> bool:
        """Apply a clock reading from a message; False if it carried none."""
        if not fields.has_clock:
            return False
        self.apply(TimerSnapshot.from_clock(fields, self._clock(), fallback_turn))
        return True

    def remaining(self, side: Side) -> int:
        snap = self._snapshot
        if snap is None:
            return self.base_time_ms
        base = snap.remaining_at_snapshot(side)
        if snap.running is not side:
            return base
        now = self._clock() + snap.offset_ms
        elapsed = now - snap.server_now
        return max(0, base - elapsed)

    def display(self) -> ClockDisplay:
        running = self._snapshot.running if self._snapshot else None
        return ClockDisplay(
            first_ms=self.remaining(Side.FIRST),
            second_ms=self.remaining(Side.SECOND),
            running=running,
        )


class ClockTicker:
    """Re-derives the clock display on a fixed interval and pushes it out.

    ``on_expired`` fires once per snapshot when the running side's derived
    time reaches zero. It is advisory: the server decides the actual result.
    """

    def __init__(
        self,
        timer: TimerReconciler,
        on_tick: Callable[[ClockDisplay], None],
        *,
        on_expired: Callable[[Side], None] | None = None,
        interval: float = CLOCK_TICK_SECONDS,
    ):
        self.timer = timer
        self.on_tick = on_tick
        self.on_expired = on_expired
        self.interval = interval
        self._task: asyncio.Task | None = None
        self._expired_for: TimerSnapshot | None = None

    def tick(self) -> ClockDisplay:
        display = self.timer.display()
        try:
            self.on_tick(display)
        except Exception:
            logger.exception("Clock tick callback failed")
        expired = display.expired_side
        snap = self.timer.snapshot
        if expired is not None and self.on_expired and snap is not self._expired_for:
            self._expired_for = snap
            try:
                self.on_expired(expired)
            except Exception:
                logger.exception("Clock expiry callback failed")
        return display

    async def _loop(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self._loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.wait({self._task})
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None
