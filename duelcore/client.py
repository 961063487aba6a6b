"""DuelClient: one object wiring every component over a single connection.

Holds no session state of its own; every property reads through to the
component that owns it.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from .account import AccountClient, BalanceTracker
from .balance_cache import BalanceCache
from .config import API_URL, WS_URL
from .connection import ConnectionManager
from .errors import AccountError, InvalidRequestError
from .events import GameEnded, ResyncReason, ResyncRequested, log_task_failure
from .identity import GameIdentity
from .lobby import Lobby, PrivateLobbyBridge
from .matchmaking import MatchmakingController
from .models import (
    ConnectionState,
    GameEndResult,
    GameSnapshot,
    MatchmakingRequest,
    SessionPhase,
    Side,
)
from .session import GameSessionReconciler
from .spectator import SpectatorChannel, SpectatorSession
from .timer import ClockDisplay, ClockTicker, TimerReconciler, wall_clock_ms
from .transport import Connector, websocket_connector

logger = logging.getLogger(__name__)


class DuelClient:
    def __init__(
        self,
        *,
        token: str | None = None,
        token_provider: Callable[[], Awaitable[str | None]] | None = None,
        ws_url: str = WS_URL,
        api_url: str = API_URL,
        connector: Connector = websocket_connector,
        account: AccountClient | None = None,
        cache: BalanceCache | None = None,
        clock: Callable[[], int] = wall_clock_ms,
        **connection_options,
    ):
        self._token = token
        self.connection = ConnectionManager(
            ws_url, connector=connector, token_provider=token_provider, **connection_options
        )
        self.account = account or AccountClient(api_url, token=token, token_provider=token_provider)
        self.balance = BalanceTracker(self.account, cache)
        self.timer = TimerReconciler(clock=clock)
        self._clock = clock

        self.session = GameSessionReconciler(self.connection, timer=self.timer)
        self.matchmaking = MatchmakingController(
            self.connection, self.session, balance=self._known_balance
        )
        self.lobby = PrivateLobbyBridge(self.connection, self.session, balance=self._known_balance)

        self.display_name: str | None = None
        self._spectators: list[SpectatorSession] = []
        self._background: set[asyncio.Task] = set()
        self.session.subscribe(self._on_session_event)

    # ------------------------------------------------------------------
    # Read-through state
    # ------------------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self.connection.state

    @property
    def phase(self) -> SessionPhase:
        return self.session.phase

    @property
    def snapshot(self) -> GameSnapshot | None:
        return self.session.snapshot

    @property
    def end_result(self) -> GameEndResult | None:
        return self.session.end_result

    @property
    def known_balance(self) -> int | None:
        return self.balance.known_balance

    def clock(self) -> ClockDisplay:
        return self.timer.display()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> ConnectionState:
        """Connect (refreshing the auth token first) and fetch the balance.

        The profile name is only fetched when the server did not send one.
        """
        state = await self.connection.connect(self._token)
        self.balance.user_id = self.connection.user_id
        self.display_name = self.connection.player_name
        if not self.display_name:
            try:
                self.display_name = await self.account.get_display_name()
            except AccountError as e:
                logger.warning("Could not fetch display name: %s", e)
        await self.balance.refresh(force=True)
        return state

    async def close(self) -> None:
        for spectator in self._spectators:
            spectator.detach()
        self._spectators.clear()
        self.lobby.close()
        self.matchmaking.close()
        self.session.close()
        for task in list(self._background):
            task.cancel()
        await self.connection.disconnect()
        await self.account.aclose()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def find_match(self, wager: int, display_name: str | None = None) -> MatchmakingRequest:
        name = display_name or self.connection.player_name or self.display_name or "Player"
        return self.matchmaking.find_match(wager, name)

    def cancel_search(self) -> bool:
        return self.matchmaking.cancel_search()

    async def create_lobby(self, wager: int) -> Lobby:
        return await self.lobby.create_lobby(wager)

    async def join_lobby(self, code: str) -> Lobby:
        return await self.lobby.join_lobby(code)

    def resume(self, persisted_id: str) -> None:
        """Rejoin a session by its persisted id (e.g. after a restart)."""
        if not persisted_id or not persisted_id.strip():
            raise InvalidRequestError("A persisted game id is required to resume")
        if self.session.phase is SessionPhase.IN_SESSION:
            raise InvalidRequestError("A game is already in progress")
        self.session.join_session(GameIdentity.persisted(persisted_id.strip()))

    def submit_move(self, from_square: str, to_square: str, promotion: str | None = None) -> bool:
        return self.session.submit_move(from_square, to_square, promotion)

    def queue_premove(self, from_square: str, to_square: str, promotion: str | None = None) -> None:
        self.session.queue_premove(from_square, to_square, promotion)

    def resign(self) -> bool:
        return self.session.resign()

    def acknowledge_result(self) -> bool:
        return self.session.acknowledge_result()

    def notify_visibility(self, visible: bool) -> None:
        if visible:
            self.session.request_resync(ResyncRequested(ResyncReason.VISIBILITY))

    def notify_focus(self) -> None:
        self.session.request_resync(ResyncRequested(ResyncReason.FOCUS))

    def spectate(self, target: str) -> SpectatorSession:
        """Watch another player's game. The returned handle can only watch."""
        spectator = SpectatorSession(
            SpectatorChannel(self.connection), timer=TimerReconciler(clock=self._clock)
        )
        spectator.attach(target)
        self._spectators.append(spectator)
        return spectator

    def clock_ticker(
        self,
        on_tick: Callable[[ClockDisplay], None],
        on_expired: Callable[[Side], None] | None = None,
    ) -> ClockTicker:
        return ClockTicker(self.timer, on_tick, on_expired=on_expired)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _known_balance(self) -> int | None:
        return self.balance.known_balance

    def _on_session_event(self, event) -> None:
        if isinstance(event, GameEnded):
            self._spawn(self.balance.refresh(force=True))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(log_task_failure)
