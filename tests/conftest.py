"""Shared fixtures and fakes for the duelcore test suite."""

import asyncio
import json
import sys
from collections import defaultdict
from pathlib import Path

import pytest

# Ensure the project root is on sys.path so 'duelcore' resolves
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from duelcore.errors import ChannelClosed  # noqa: E402
from duelcore.events import Listeners, ResyncReason, ResyncRequested  # noqa: E402
from duelcore.session import GameSessionReconciler  # noqa: E402
from duelcore.timer import TimerReconciler  # noqa: E402

START_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"
AFTER_E4_FEN = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"


# ---------------------------------------------------------------------------
# Pattern 1: In-memory channel standing in for a WebSocket
# ---------------------------------------------------------------------------

class FakeChannel:
    """Duplex channel backed by a queue.

    ``push()`` queues a server frame for ``recv()``; ``drop()`` makes the
    next ``recv()`` raise ChannelClosed. Everything the client sends is
    decoded into ``sent``.
    """

    def __init__(self, *, welcome: bool = True, user_id: str = "user-1", player_name: str | None = "Alice"):
        self.sent: list[dict] = []
        self.closed = False
        self.close_calls = 0
        self._inbox: asyncio.Queue = asyncio.Queue()
        if welcome:
            hello = {"type": "welcome", "userId": user_id}
            if player_name is not None:
                hello["playerName"] = player_name
            self.push(hello)

    def push(self, message) -> None:
        self._inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self, code: int = 1006, reason: str = "") -> None:
        self._inbox.put_nowait(ChannelClosed(code, reason))

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    async def send(self, raw: str) -> None:
        if self.closed:
            raise ChannelClosed(1006, "closed")
        self.sent.append(json.loads(raw))

    async def recv(self) -> str:
        item = await self._inbox.get()
        if isinstance(item, ChannelClosed):
            self.closed = True
            raise item
        return item

    async def close(self) -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(ChannelClosed(1000, "closed by client"))


class FakeConnector:
    """Hands out scripted channels (or raises scripted errors) in order.

    Once the script runs out every call gets a fresh welcoming FakeChannel.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0
        self.channels: list[FakeChannel] = []

    async def __call__(self, url: str) -> FakeChannel:
        self.calls += 1
        item = self.script.pop(0) if self.script else FakeChannel()
        if isinstance(item, BaseException):
            raise item
        self.channels.append(item)
        return item


class FakeClock:
    """Injected millisecond wall clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Pattern 2: Recording connection for components above the Connection Manager
# ---------------------------------------------------------------------------

class RecordingConnection:
    """Same surface the session components use, with no network at all.

    ``deliver()`` dispatches an inbound message synchronously, the way the
    real read loop does.
    """

    def __init__(self, user_id: str = "user-1"):
        self.user_id = user_id
        self.player_name = "Alice"
        self.sent: list[dict] = []
        self.restarts = 0
        self._handlers: dict[str, Listeners] = defaultdict(lambda: Listeners("test"))
        self.resync_listeners = Listeners("resync")

    def on(self, kind, callback):
        return self._handlers[kind].add(callback)

    def on_resync(self, callback):
        return self.resync_listeners.add(callback)

    def send(self, message: dict) -> bool:
        self.sent.append(message)
        return True

    async def restart(self):
        self.restarts += 1

    def deliver(self, message: dict) -> None:
        self._handlers[message["type"]].emit(message)

    def resync(self, reason: ResyncReason = ResyncReason.RECONNECT) -> None:
        self.resync_listeners.emit(ResyncRequested(reason))

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------

def match_found(game_id="g_1", color="w", *, wager=100, opponent="Bob", **extra) -> dict:
    msg = {
        "type": "match_found",
        "gameId": game_id,
        "color": color,
        "fen": START_FEN,
        "wager": wager,
        "opponent": {"name": opponent, "playerId": "user-2"},
    }
    msg.update(extra)
    return msg


def move_applied(game_id="g_1", fen=AFTER_E4_FEN, turn="b", move="e2e4", **extra) -> dict:
    msg = {"type": "move_applied", "fen": fen, "turn": turn, "move": move}
    if game_id is not None:
        msg["gameId"] = game_id
    msg.update(extra)
    return msg


def game_ended(game_id="g_1", winner="w", reason="checkmate", **extra) -> dict:
    msg = {"type": "game_ended", "winnerColor": winner, "reason": reason}
    if game_id is not None:
        msg["gameId"] = game_id
    msg.update(extra)
    return msg


def clock_update(game_id="g_1", *, w_ms=60_000, b_ms=60_000, turn="w", running=True, server_now=None, **extra) -> dict:
    msg = {
        "type": "clock_update",
        "wMs": w_ms,
        "bMs": b_ms,
        "turn": turn,
        "clockRunning": running,
    }
    if game_id is not None:
        msg["gameId"] = game_id
    if server_now is not None:
        msg["serverNow"] = server_now
    msg.update(extra)
    return msg


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def conn():
    return RecordingConnection()


@pytest.fixture
def timer(clock):
    return TimerReconciler(clock=clock)


@pytest.fixture
def session(conn, timer):
    reconciler = GameSessionReconciler(conn, timer=timer, resign_timeout=0.05)
    yield reconciler
    reconciler.close()


@pytest.fixture
def events(session):
    """Every event the session publishes, in order."""
    received = []
    session.subscribe(received.append)
    return received
