"""Spectator Attach: a read-only view of someone else's live game.

A ``SpectatorSession`` never sees the Connection Manager itself. It is
handed a ``SpectatorChannel``, which can subscribe to inbound messages and
send exactly two things: a spectate request and a leave. Neither the
session nor its channel has a move or resign operation.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from pydantic import ValidationError

from .errors import InvalidRequestError
from .events import Listeners
from .identity import GameIdentity, refs_from_payload
from .messages import ClockFields, GameEndedPayload, MoveApplied, GameSync, ServerError, SpectateStarted
from .models import LastMove, Side
from .session import turn_of
from .timer import TimerReconciler
from .ws_constants import (
    CLOCK_MESSAGES,
    MSG_ERROR,
    MSG_GAME_ENDED,
    MSG_GAME_SYNC,
    MSG_LEAVE_SPECTATE,
    MSG_MOVE_APPLIED,
    MSG_OPPONENT_LEFT,
    MSG_SPECTATE_GAME,
    MSG_SPECTATE_STARTED,
    SPECTATE_ERRORS,
)

logger = logging.getLogger(__name__)


class SpectatorChannel:
    """The only outbound capability a spectator gets."""

    def __init__(self, connection):
        self._connection = connection

    def on(self, kind: str, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._connection.on(kind, callback)

    def request_spectate(self, target: str) -> bool:
        return self._connection.send({"type": MSG_SPECTATE_GAME, "targetUserId": target})

    def leave(self) -> bool:
        return self._connection.send({"type": MSG_LEAVE_SPECTATE})


class SpectatorStatus(str, Enum):
    DETACHED = "detached"
    ATTACHING = "attaching"
    WATCHING = "watching"
    ENDED = "ended"
    FAILED = "failed"


@dataclass(frozen=True)
class SpectatorView:
    identity: GameIdentity
    board_state: str
    turn: Side
    white_id: str
    black_id: str
    wager: int
    last_move: LastMove | None = None


@dataclass(frozen=True)
class SpectatorSummary:
    identity: GameIdentity
    reason: str
    winner: Side | None


@dataclass(frozen=True)
class SpectatorUpdated:
    view: SpectatorView


@dataclass(frozen=True)
class SpectatorEnded:
    summary: SpectatorSummary


@dataclass(frozen=True)
class SpectatorFailed:
    code: str
    message: str


class SpectatorSession:
    def __init__(self, channel: SpectatorChannel, *, timer: TimerReconciler | None = None):
        self._channel = channel
        self.timer = timer or TimerReconciler()
        self.status = SpectatorStatus.DETACHED
        self.target: str | None = None
        self.view: SpectatorView | None = None
        self.summary: SpectatorSummary | None = None
        self.error: SpectatorFailed | None = None
        self.events = Listeners("spectator")
        self._unsubscribe: list[Callable[[], None]] = []

    @property
    def is_attached(self) -> bool:
        return self.status is not SpectatorStatus.DETACHED

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        return self.events.add(callback)

    def attach(self, target: str) -> None:
        """Start watching the live game of player *target*."""
        if self.is_attached:
            raise InvalidRequestError(f"Already spectating {self.target}; detach first")
        target = (target or "").strip()
        if not target:
            raise InvalidRequestError("Spectate target is required")

        self.target = target
        self.view = None
        self.summary = None
        self.error = None
        self.timer.reset()
        self.status = SpectatorStatus.ATTACHING

        handlers = {
            MSG_SPECTATE_STARTED: self._on_started,
            MSG_MOVE_APPLIED: self._on_move_applied,
            MSG_GAME_SYNC: self._on_game_sync,
            MSG_GAME_ENDED: self._on_game_ended,
            MSG_OPPONENT_LEFT: self._on_game_ended,
            MSG_ERROR: self._on_error,
        }
        for kind in CLOCK_MESSAGES:
            handlers[kind] = self._on_clock
        self._unsubscribe = [self._channel.on(kind, fn) for kind, fn in handlers.items()]
        self._channel.request_spectate(target)
        logger.info("Spectate requested for %s", target)

    def detach(self) -> None:
        """Stop processing messages for the target immediately."""
        if not self.is_attached:
            return
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        if self.status in (SpectatorStatus.ATTACHING, SpectatorStatus.WATCHING):
            self._channel.leave()
        logger.info("Stopped spectating %s", self.target)
        self.status = SpectatorStatus.DETACHED
        self.target = None
        self.view = None
        self.timer.reset()

    # ------------------------------------------------------------------
    # Inbound handlers
    # ------------------------------------------------------------------

    def _on_started(self, msg: dict) -> None:
        if self.status is not SpectatorStatus.ATTACHING:
            return
        try:
            payload = SpectateStarted.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid spectate_started: %s", e)
            return

        identity = GameIdentity(session_id=payload.game_id, persisted_id=payload.db_game_id)
        self.view = SpectatorView(
            identity=identity,
            board_state=payload.fen,
            turn=turn_of(payload, payload.fen) or Side.FIRST,
            white_id=payload.white_id,
            black_id=payload.black_id,
            wager=payload.wager,
        )
        self.timer.receive(payload, self.view.turn)
        self.status = SpectatorStatus.WATCHING
        logger.info("Spectating %s (%s vs %s)", identity, payload.white_id, payload.black_id)
        self.events.emit(SpectatorUpdated(self.view))
        if payload.is_ended:
            self._finish(SpectatorSummary(identity, "game_over", None))

    def _on_move_applied(self, msg: dict) -> None:
        if not self._is_for_target(msg):
            return
        try:
            payload = MoveApplied.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid move_applied: %s", e)
            return
        self._update(
            msg,
            board_state=payload.fen,
            turn=Side(payload.turn),
            last_move=LastMove.parse(payload.move),
            clock=payload,
        )

    def _on_game_sync(self, msg: dict) -> None:
        if not self._is_for_target(msg):
            return
        try:
            payload = GameSync.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid game_sync: %s", e)
            return
        self._update(msg, board_state=payload.fen, turn=Side(payload.turn), clock=payload)

    def _on_clock(self, msg: dict) -> None:
        if not self._is_for_target(msg):
            return
        try:
            fields = ClockFields.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid clock message: %s", e)
            return
        self._update(msg, turn=Side.from_wire(fields.turn or fields.current_turn), clock=fields)

    def _on_game_ended(self, msg: dict) -> None:
        if not self._is_for_target(msg):
            return
        try:
            payload = GameEndedPayload.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid game end for spectated game: %s", e)
            return
        self._finish(SpectatorSummary(
            identity=self.view.identity,
            reason=payload.reason,
            winner=Side.from_wire(payload.winner_color),
        ))

    def _on_error(self, msg: dict) -> None:
        if self.status is not SpectatorStatus.ATTACHING:
            return
        try:
            error = ServerError.model_validate(msg)
        except ValidationError:
            return
        if error.code not in SPECTATE_ERRORS:
            return
        logger.warning("Spectate %s failed: %s %s", self.target, error.code, error.message)
        self.error = SpectatorFailed(error.code, error.message)
        self.status = SpectatorStatus.FAILED
        self.events.emit(self.error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_for_target(self, msg: dict) -> bool:
        if self.status is not SpectatorStatus.WATCHING or self.view is None:
            return False
        refs = refs_from_payload(msg)
        # No id at all means the watched game
        return not refs or self.view.identity.matches(refs)

    def _update(self, msg: dict, *, board_state=None, turn=None, last_move=None, clock=None) -> None:
        view = replace(self.view, identity=self.view.identity.merged(refs_from_payload(msg)))
        if board_state is not None:
            view = replace(view, board_state=board_state)
        if turn is not None:
            view = replace(view, turn=turn)
        if last_move is not None:
            view = replace(view, last_move=last_move)
        self.view = view
        if clock is not None:
            self.timer.receive(clock, view.turn)
        self.events.emit(SpectatorUpdated(view))

    def _finish(self, summary: SpectatorSummary) -> None:
        self.summary = summary
        self.status = SpectatorStatus.ENDED
        self.timer.freeze()
        logger.info("Spectated game %s ended: %s", summary.identity, summary.reason)
        self.events.emit(SpectatorEnded(summary))
