"""Transport adapter between the Connection Manager and a real WebSocket.

The Connection Manager only needs three coroutines: ``send(text)``,
``recv() -> text`` and ``close()``. Both read and write raise
``ChannelClosed`` when the socket goes away, so nothing above this module
depends on the websockets exception hierarchy.
"""

import logging
from typing import Awaitable, Callable, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import ChannelClosed

logger = logging.getLogger(__name__)

OPEN_TIMEOUT_SECONDS = 10
PING_INTERVAL_SECONDS = 20


class Channel(Protocol):
    async def send(self, raw: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Channel]]


def _closed_from(exc: ConnectionClosed) -> ChannelClosed:
    frame = exc.rcvd
    if frame is None:
        return ChannelClosed(None, "")
    return ChannelClosed(frame.code, frame.reason)


class WebSocketChannel:
    def __init__(self, ws):
        self._ws = ws

    async def send(self, raw: str) -> None:
        try:
            await self._ws.send(raw)
        except ConnectionClosed as exc:
            raise _closed_from(exc) from exc

    async def recv(self) -> str:
        try:
            data = await self._ws.recv()
        except ConnectionClosed as exc:
            raise _closed_from(exc) from exc
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        return data

    async def close(self) -> None:
        await self._ws.close()


async def websocket_connector(url: str) -> WebSocketChannel:
    """Open a WebSocket to *url*. Handshake failures surface as ChannelClosed."""
    try:
        ws = await websockets.connect(
            url,
            open_timeout=OPEN_TIMEOUT_SECONDS,
            ping_interval=PING_INTERVAL_SECONDS,
        )
    except WebSocketException as exc:
        logger.debug("WebSocket handshake failed: %s", exc)
        raise ChannelClosed(None, str(exc)) from exc
    return WebSocketChannel(ws)
