"""Private Lobby Bridge: code-based 1:1 rooms.

A lobby moves open -> matched (second player joined) or open -> expired.
On ``matched`` the room update carries the persisted game id, and the
bridge hands it to ``GameSessionReconciler.join_session``: the same path a
resume after reload takes, so private and matchmade games share one
reconciliation path once the server answers.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from pydantic import ValidationError

from .config import LOBBY_CODE_ALPHABET, LOBBY_CODE_LENGTH, LOBBY_REQUEST_TIMEOUT_SECONDS
from .errors import InvalidRequestError, LobbyError
from .identity import GameIdentity
from .messages import LobbyCreated, RoomUpdate, ServerError
from .models import SessionPhase
from .session import GameSessionReconciler
from .ws_constants import (
    LOBBY_ERRORS,
    MSG_CREATE_LOBBY,
    MSG_ERROR,
    MSG_JOIN_LOBBY,
    MSG_LEAVE_LOBBY,
    MSG_LOBBY_CREATED,
    MSG_ROOM_UPDATE,
)

logger = logging.getLogger(__name__)


class LobbyStatus(str, Enum):
    OPEN = "open"
    MATCHED = "matched"
    EXPIRED = "expired"

    @classmethod
    def from_wire(cls, status: str) -> "LobbyStatus":
        status = (status or "").lower()
        if status in ("matched", "started", "ready", "full"):
            return cls.MATCHED
        if status in ("expired", "cancelled", "canceled", "closed"):
            return cls.EXPIRED
        return cls.OPEN


@dataclass(frozen=True)
class Lobby:
    code: str
    wager: int
    status: LobbyStatus = LobbyStatus.OPEN
    persisted_id: str | None = None
    is_host: bool = False


def normalize_code(code: str) -> str:
    """Upper-case and validate a user-typed lobby code."""
    cleaned = (code or "").strip().upper()
    if len(cleaned) != LOBBY_CODE_LENGTH or any(c not in LOBBY_CODE_ALPHABET for c in cleaned):
        raise InvalidRequestError(f"Invalid lobby code: {code!r}")
    return cleaned


class PrivateLobbyBridge:
    def __init__(
        self,
        connection,
        session: GameSessionReconciler,
        *,
        balance: Callable[[], int | None] | None = None,
        timeout: float = LOBBY_REQUEST_TIMEOUT_SECONDS,
    ):
        self.connection = connection
        self.session = session
        self.timeout = timeout
        self._balance = balance or (lambda: None)
        self.lobby: Lobby | None = None

        self._pending: asyncio.Future | None = None
        self._pending_code: str | None = None
        self._unsubscribe = [
            connection.on(MSG_LOBBY_CREATED, self._on_lobby_created),
            connection.on(MSG_ROOM_UPDATE, self._on_room_update),
            connection.on(MSG_ERROR, self._on_error),
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        self._fail_pending(LobbyError("Lobby bridge closed"))

    async def create_lobby(self, wager: int) -> Lobby:
        """Open a private room; returns it once the server has assigned a code."""
        self._check_wager(wager)
        self._check_idle()
        future = self._expect(None)
        self.lobby = None
        self.connection.send({"type": MSG_CREATE_LOBBY, "wager": wager})
        logger.info("Creating private lobby (wager=%d)", wager)
        return await self._wait(future)

    async def join_lobby(self, code: str) -> Lobby:
        """Join someone else's room by code."""
        code = normalize_code(code)
        self._check_idle()
        future = self._expect(code)
        self.lobby = None
        self.connection.send({"type": MSG_JOIN_LOBBY, "code": code})
        logger.info("Joining private lobby %s", code)
        return await self._wait(future)

    def leave_lobby(self) -> bool:
        lobby = self.lobby
        if lobby is None or lobby.status is not LobbyStatus.OPEN:
            return False
        self.connection.send({"type": MSG_LEAVE_LOBBY, "code": lobby.code})
        self.lobby = None
        logger.info("Left lobby %s", lobby.code)
        return True

    # ------------------------------------------------------------------
    # Inbound handlers
    # ------------------------------------------------------------------

    def _on_lobby_created(self, msg: dict) -> None:
        try:
            payload = LobbyCreated.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid lobby_created: %s", e)
            return
        if self._pending is None or self._pending_code is not None:
            logger.warning("Ignoring unexpected lobby_created %s", payload.code)
            return
        self.lobby = Lobby(code=payload.code, wager=payload.wager, is_host=True)
        logger.info("Lobby %s open", payload.code)
        self._resolve(self.lobby)

    def _on_room_update(self, msg: dict) -> None:
        try:
            payload = RoomUpdate.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid room_update: %s", e)
            return

        code = payload.code.upper()
        lobby = self.lobby
        if lobby is None and self._pending is not None and self._pending_code == code:
            lobby = Lobby(code=code, wager=payload.wager or 0)
        if lobby is None or lobby.code != code:
            logger.debug("Ignoring room_update for %s", code)
            return

        status = LobbyStatus.from_wire(payload.status)
        previous = lobby.status
        lobby = replace(
            lobby,
            status=status,
            wager=payload.wager if payload.wager is not None else lobby.wager,
            persisted_id=payload.db_game_id or lobby.persisted_id,
        )
        self.lobby = lobby
        logger.info("Lobby %s: %s", code, status.value)

        if status is LobbyStatus.EXPIRED:
            self._fail_pending(LobbyError(f"Lobby {code} has expired", code="LOBBY_EXPIRED"))
            return
        self._resolve(lobby)

        if status is LobbyStatus.MATCHED and previous is not LobbyStatus.MATCHED:
            if lobby.persisted_id is None:
                logger.warning("Lobby %s matched without a game id", code)
                return
            self.session.join_session(GameIdentity.persisted(lobby.persisted_id))

    def _on_error(self, msg: dict) -> None:
        if self._pending is None:
            return
        try:
            error = ServerError.model_validate(msg)
        except ValidationError:
            return
        if error.code in LOBBY_ERRORS:
            self._fail_pending(LobbyError(error.message or error.code, code=error.code))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_wager(self, wager: int) -> None:
        if isinstance(wager, bool) or not isinstance(wager, int) or wager < 0:
            raise InvalidRequestError(f"Invalid wager: {wager!r}")
        if wager > 0:
            balance = self._balance()
            if balance is None or wager > balance:
                raise InvalidRequestError(f"Wager {wager} exceeds known balance {balance}")

    def _check_idle(self) -> None:
        if self.session.phase in (SessionPhase.SEARCHING, SessionPhase.IN_SESSION):
            raise InvalidRequestError("Finish the current search or game first")
        if self._pending is not None:
            raise InvalidRequestError("A lobby request is already in flight")

    def _expect(self, code: str | None) -> asyncio.Future:
        self._pending = asyncio.get_running_loop().create_future()
        self._pending_code = code
        return self._pending

    async def _wait(self, future: asyncio.Future) -> Lobby:
        try:
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError:
            raise LobbyError("Lobby request timed out") from None
        finally:
            if self._pending is future:
                self._pending = None
                self._pending_code = None

    def _resolve(self, lobby: Lobby) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(lobby)

    def _fail_pending(self, exc: LobbyError) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(exc)
