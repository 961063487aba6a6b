"""Connection Manager: owns the single duplex channel to the match server.

One background task runs the whole connection lifecycle:

    connect -> auth -> serve (read loop + write loop) -> backoff -> connect ...

Everything above this module talks to the server through ``send()`` and the
per-kind dispatch registered with ``on()``. Inbound messages are dispatched
synchronously from the read loop, one at a time, so a handler never sees two
messages interleaved.
"""

import asyncio
import json
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import uuid4

from .config import (
    AUTH_TIMEOUT_SECONDS,
    MAX_QUEUE_SIZE,
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_DELAYS,
    WIRE_LOG_SIZE,
    WS_URL,
)
from .errors import AuthRejectedError, ChannelClosed
from .events import ConnectionLost, Listeners, ResyncReason, ResyncRequested, log_task_failure
from .models import ConnectionState
from .transport import Channel, Connector, websocket_connector
from .ws_constants import AUTH_CLOSE_CODES, MSG_AUTH, MSG_ERROR, MSG_WELCOME

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str | None]]


@dataclass
class WireLogEntry:
    direction: str  # "inbound" | "outbound"
    raw: str
    parsed: Any
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: uuid4().hex[:12])


class ConnectionManager:
    def __init__(
        self,
        url: str = WS_URL,
        *,
        connector: Connector = websocket_connector,
        token_provider: TokenProvider | None = None,
        reconnect_delays: tuple[float, ...] = RECONNECT_DELAYS,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        auth_timeout: float = AUTH_TIMEOUT_SECONDS,
        max_queue: int = MAX_QUEUE_SIZE,
        wire_log_size: int = WIRE_LOG_SIZE,
    ):
        self.url = url
        self._connector = connector
        self._token_provider = token_provider
        self.reconnect_delays = tuple(reconnect_delays) or (1.0,)
        self.max_attempts = max_attempts
        self.auth_timeout = auth_timeout
        self.max_queue = max_queue

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempt = 0
        self.user_id: str | None = None
        self.player_name: str | None = None

        self._token: str | None = None
        self._channel: Channel | None = None
        self._task: asyncio.Task | None = None
        self._closing = False
        self._settled: asyncio.Future | None = None
        self._outbox: deque[str] = deque()
        self._outbox_ready = asyncio.Event()

        self._handlers: dict[str, Listeners] = defaultdict(lambda: Listeners("message"))
        self.state_listeners = Listeners("state")
        self.resync_listeners = Listeners("resync")
        self.terminal_listeners = Listeners("terminal")
        self.log_listeners = Listeners("wire log")
        self.wire_log: deque[WireLogEntry] = deque(maxlen=wire_log_size)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on(self, kind: str, callback: Callable[[dict], None]) -> Callable[[], None]:
        """Dispatch inbound messages of *kind* to *callback*."""
        return self._handlers[kind].add(callback)

    def on_state(self, callback: Callable[[ConnectionState], None]) -> Callable[[], None]:
        return self.state_listeners.add(callback)

    def on_resync(self, callback: Callable[[ResyncRequested], None]) -> Callable[[], None]:
        return self.resync_listeners.add(callback)

    def on_terminal(self, callback: Callable[[ConnectionLost], None]) -> Callable[[], None]:
        return self.terminal_listeners.add(callback)

    def on_log(self, callback: Callable[[WireLogEntry], None]) -> Callable[[], None]:
        return self.log_listeners.add(callback)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def queue_size(self) -> int:
        return len(self._outbox)

    async def connect(self, auth_token: str | None = None) -> ConnectionState:
        """Start the connection if it is not already running.

        Waits until the first attempt settles and returns the state it
        settled in (connected, reconnecting, or disconnected).
        """
        if auth_token:
            self._token = auth_token
        if self._task is not None and not self._task.done():
            logger.debug("Already connected or connecting")
            return self.state
        if not self._token and self._token_provider is None:
            logger.warning("Cannot connect - no auth token")
            self._set_state(ConnectionState.DISCONNECTED)
            return self.state

        self._closing = False
        self.reconnect_attempt = 0
        self._settled = asyncio.get_running_loop().create_future()
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.ensure_future(self._run())
        self._task.add_done_callback(log_task_failure)
        return await asyncio.shield(self._settled)

    async def disconnect(self) -> None:
        """Close the channel, stop reconnecting, and drop queued messages."""
        self._closing = True
        channel, task = self._channel, self._task
        self._channel = None
        self._task = None
        if channel is not None:
            await self._close_quietly(channel)
        if task is not None and not task.done():
            task.cancel()
            # wait() does not raise the task's CancelledError, only our own
            await asyncio.wait({task})
        self._outbox.clear()
        self.reconnect_attempt = 0
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected")

    async def restart(self) -> ConnectionState:
        """Tear the connection down and bring it back with the same token."""
        await self.disconnect()
        return await self.connect()

    def send(self, message: dict) -> bool:
        """Queue *message* for delivery; it goes out as soon as the channel is up.

        Returns False if the outbound queue is full and the message was dropped.
        """
        raw = json.dumps(message)
        if len(self._outbox) >= self.max_queue:
            logger.warning("Outbound queue full, dropping %s", message.get("type"))
            return False
        self._record("outbound", raw, message)
        self._outbox.append(raw)
        self._outbox_ready.set()
        if not self.is_connected:
            logger.debug("Queued %s (state=%s)", message.get("type"), self.state.value)
        return True

    # ------------------------------------------------------------------
    # Lifecycle task
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while not self._closing:
            try:
                channel = await self._open()
            except asyncio.CancelledError:
                raise
            except (AuthRejectedError, ChannelClosed, OSError, asyncio.TimeoutError) as exc:
                failure = str(exc) or type(exc).__name__
                logger.warning("Connection attempt failed: %s", failure)
            else:
                await self._serve(channel)
                failure = "connection dropped"
            if self._closing or not await self._backoff(failure):
                return

    async def _open(self) -> Channel:
        if self._token_provider is not None:
            try:
                token = await self._token_provider()
            except Exception:
                logger.exception("Auth token refresh failed")
                token = None
            if token:
                self._token = token
        if not self._token:
            raise AuthRejectedError("no auth token available")

        channel = await self._connector(self.url)
        # Visible to disconnect() while the handshake is still in flight
        self._channel = channel
        try:
            await channel.send(json.dumps({"type": MSG_AUTH, "token": self._token}))
            raw = await asyncio.wait_for(channel.recv(), self.auth_timeout)
        except ChannelClosed as exc:
            await self._release(channel)
            if exc.code in AUTH_CLOSE_CODES:
                raise AuthRejectedError(f"auth rejected (code={exc.code})") from exc
            raise
        except BaseException:
            await self._release(channel)
            raise

        reply = self._parse(raw)
        if reply is not None:
            self._record("inbound", raw, reply)
        kind = reply.get("type") if reply else None
        if kind == MSG_WELCOME:
            self.user_id = reply.get("userId")
            self.player_name = reply.get("playerName")
            return channel

        await self._release(channel)
        if kind == MSG_ERROR:
            raise AuthRejectedError(f"auth rejected: {reply.get('message') or reply.get('code')}")
        raise AuthRejectedError(f"unexpected reply to auth: {kind!r}")

    async def _serve(self, channel: Channel) -> None:
        if self._closing:
            await self._release(channel)
            return
        was_reconnecting = self.state is ConnectionState.RECONNECTING
        self._channel = channel
        self.reconnect_attempt = 0
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to %s", self.url)
        writer = asyncio.ensure_future(self._write_loop(channel))

        if was_reconnecting:
            self.resync_listeners.emit(ResyncRequested(ResyncReason.RECONNECT))

        try:
            while True:
                raw = await channel.recv()
                self._dispatch(raw)
        except (ChannelClosed, OSError) as exc:
            logger.info("Connection closed: %s", exc)
        finally:
            writer.cancel()
            await asyncio.wait({writer})
            if self._channel is channel:
                self._channel = None

    async def _write_loop(self, channel: Channel) -> None:
        try:
            while True:
                while self._outbox:
                    # Pop only after a successful write so a failed frame is replayed
                    await channel.send(self._outbox[0])
                    self._outbox.popleft()
                self._outbox_ready.clear()
                await self._outbox_ready.wait()
        except (ChannelClosed, OSError) as exc:
            logger.debug("Write failed, closing channel: %s", exc)
            await self._close_quietly(channel)

    async def _backoff(self, failure: str) -> bool:
        if self.reconnect_attempt >= self.max_attempts:
            logger.warning(
                "Giving up after %d reconnect attempts: %s", self.reconnect_attempt, failure
            )
            attempts = self.reconnect_attempt
            self._set_state(ConnectionState.DISCONNECTED)
            self.terminal_listeners.emit(ConnectionLost(attempts=attempts, reason=failure))
            return False

        delay = self.reconnect_delays[min(self.reconnect_attempt, len(self.reconnect_delays) - 1)]
        self.reconnect_attempt += 1
        self._set_state(ConnectionState.RECONNECTING)
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay, self.reconnect_attempt, self.max_attempts,
        )
        await asyncio.sleep(delay)
        return not self._closing

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if state is not ConnectionState.CONNECTING and self._settled and not self._settled.done():
            self._settled.set_result(state)
        if self.state is state:
            return
        logger.debug("Connection state %s -> %s", self.state.value, state.value)
        self.state = state
        self.state_listeners.emit(state)

    def _dispatch(self, raw: str) -> None:
        msg = self._parse(raw)
        if msg is None:
            return
        self._record("inbound", raw, msg)
        kind = msg.get("type")
        if not isinstance(kind, str):
            logger.warning("Inbound message without a type: %.200s", raw)
            return
        listeners = self._handlers.get(kind)
        if not listeners:
            logger.debug("No handler for message type=%s", kind)
            return
        listeners.emit(msg)

    @staticmethod
    def _parse(raw: str) -> dict | None:
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Malformed JSON from server: %s", e)
            return None
        if not isinstance(msg, dict):
            logger.warning("Unexpected frame shape from server: %.200s", raw)
            return None
        return msg

    def _record(self, direction: str, raw: str, parsed: Any) -> None:
        entry = WireLogEntry(direction=direction, raw=raw, parsed=parsed)
        self.wire_log.append(entry)
        if self.log_listeners:
            self.log_listeners.emit(entry)

    async def _release(self, channel: Channel) -> None:
        if self._channel is channel:
            self._channel = None
        await self._close_quietly(channel)

    @staticmethod
    async def _close_quietly(channel: Channel) -> None:
        try:
            await channel.close()
        except Exception:
            logger.debug("Error while closing channel", exc_info=True)
