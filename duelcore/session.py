"""Game Session Reconciler: the authoritative state machine for one match.

    idle -> searching -> in_session -> ended -> idle

The reconciler owns the current ``GameIdentity``, ``GameSnapshot`` and
``GameEndResult``. Every inbound session message is checked against the
installed identity before it touches state; anything addressed to another
(usually just-superseded) session is dropped. A message that names no
session at all belongs to the current one. All state changes happen
synchronously inside the dispatch callback for one message.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable

from pydantic import ValidationError

from .config import RESIGN_ACK_TIMEOUT_SECONDS
from .errors import InvalidRequestError
from .events import (
    GameEnded,
    Listeners,
    PhaseChanged,
    ResignTimedOut,
    ResyncReason,
    ResyncRequested,
    ServerErrorReceived,
    SnapshotApplied,
    log_task_failure,
)
from .identity import GameIdentity, refs_from_payload
from .messages import (
    ClockFields,
    GameEndedPayload,
    GameReconnected,
    GameSync,
    MoveApplied,
    OpponentLeft,
    ServerError,
)
from .models import (
    GameEndResult,
    GameSnapshot,
    LastMove,
    MatchmakingRequest,
    Outcome,
    SessionPhase,
    Side,
)
from .timer import TimerReconciler
from .ws_constants import (
    CLOCK_MESSAGES,
    ERR_ALREADY_IN_GAME,
    MSG_ERROR,
    MSG_FIND_MATCH,
    MSG_GAME_ENDED,
    MSG_GAME_RECONNECTED,
    MSG_GAME_SYNC,
    MSG_JOIN_GAME,
    MSG_MOVE,
    MSG_MOVE_APPLIED,
    MSG_OPPONENT_LEFT,
    MSG_RESIGN,
    MSG_SYNC_GAME,
    WAGER_ERRORS,
)

logger = logging.getLogger(__name__)

# A null winner with one of these reasons is not a draw.
_DISCONNECT_REASONS = ("disconnect", "opponent_disconnect")
# Reasons that mean the opponent walked away rather than lost over the board.
_OPPONENT_LEFT_REASONS = ("disconnect", "opponent_disconnect", "opponent_resigned")


@dataclass(frozen=True)
class SnapshotUpdate:
    """An authoritative update for the session named by ``refs``.

    ``board_state`` / ``turn`` are None for clock-only messages; ``clock`` is
    None when the message carried no clock reading. Empty ``refs`` address
    the current session. ``ended`` marks a sync of a game the server has
    already finished; the clock stops and no premove goes out.
    """
    refs: frozenset
    board_state: str | None = None
    turn: Side | None = None
    clock: ClockFields | None = None
    ended: bool = False


def turn_of(fields: ClockFields, board_state: str | None) -> Side | None:
    """Side to move: the explicit field, else the position's side-to-move token."""
    explicit = Side.from_wire(fields.turn or fields.current_turn)
    if explicit is not None:
        return explicit
    parts = (board_state or "").split()
    if len(parts) > 1 and parts[1] in ("w", "b"):
        return Side(parts[1])
    return None


def build_snapshot(
    identity: GameIdentity,
    *,
    color: str,
    board_state: str,
    fields: ClockFields,
    opponent_name: str,
    wager: int,
) -> GameSnapshot:
    return GameSnapshot(
        identity=identity,
        local_color=Side(color),
        board_state=board_state,
        turn=turn_of(fields, board_state) or Side.FIRST,
        opponent_name=opponent_name,
        wager=wager,
    )


def format_reason(reason: str) -> str:
    return reason.replace("_", " ").strip().capitalize() or "Game ended"


def result_text(outcome: Outcome, reason: str, opponent_left: bool = False) -> str:
    if opponent_left:
        return "Opponent left the game - you win!"
    text = format_reason(reason)
    if outcome is Outcome.DRAW:
        return f"Draw: {text}"
    if outcome is Outcome.WIN:
        return f"You won! {text}"
    return f"You lost: {text}"


def stake_delta(outcome: Outcome, wager: int) -> int:
    if outcome is Outcome.WIN:
        return wager
    if outcome is Outcome.LOSS:
        return -wager
    return 0


class GameSessionReconciler:
    def __init__(
        self,
        connection,
        *,
        timer: TimerReconciler | None = None,
        resign_timeout: float = RESIGN_ACK_TIMEOUT_SECONDS,
    ):
        self.connection = connection
        self.timer = timer or TimerReconciler()
        self.resign_timeout = resign_timeout

        self.phase = SessionPhase.IDLE
        self.identity: GameIdentity | None = None
        self.snapshot: GameSnapshot | None = None
        self.end_result: GameEndResult | None = None
        self.search_request: MatchmakingRequest | None = None
        self.pending_join: GameIdentity | None = None
        self.premove: LastMove | None = None
        self.resign_pending = False

        self._resign_handle: asyncio.TimerHandle | None = None
        self._heal_task: asyncio.Task | None = None
        self.events = Listeners("session")

        handlers = {
            MSG_GAME_RECONNECTED: self._on_game_reconnected,
            MSG_MOVE_APPLIED: self._on_move_applied,
            MSG_GAME_SYNC: self._on_game_sync,
            MSG_GAME_ENDED: self._on_game_ended,
            MSG_OPPONENT_LEFT: self._on_opponent_left,
            MSG_ERROR: self._on_error,
        }
        for kind in CLOCK_MESSAGES:
            handlers[kind] = self._on_clock
        self._unsubscribe = [connection.on(kind, fn) for kind, fn in handlers.items()]
        self._unsubscribe.append(connection.on_resync(self.request_resync))

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        """Receive PhaseChanged, SnapshotApplied, GameEnded, ResignTimedOut
        and ServerErrorReceived events."""
        return self.events.add(callback)

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        self._cancel_resign_timer()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def begin_search(self, request: MatchmakingRequest) -> None:
        """Enter ``searching`` for a matchmade game, retiring any old session."""
        self._retire()
        self.search_request = request
        self._set_phase(SessionPhase.SEARCHING)

    def end_search(self) -> bool:
        """Leave ``searching``; False if there was nothing to cancel."""
        if self.phase is not SessionPhase.SEARCHING or self.search_request is None:
            return False
        self._retire()
        self._set_phase(SessionPhase.IDLE)
        return True

    def join_session(self, identity: GameIdentity) -> None:
        """Attach to an existing session by identity (private room or resume).

        The identity is installed straight away so the server's reply can be
        matched against it; the snapshot arrives with that reply.
        """
        self._retire()
        self.identity = identity
        self.pending_join = identity
        self._set_phase(SessionPhase.SEARCHING)
        logger.info("Joining session %s", identity)
        self._send_join(identity)

    def install(self, snapshot: GameSnapshot, clock: ClockFields | None = None) -> None:
        """Enter ``in_session`` with a fresh identity and snapshot.

        This is the only way into ``in_session``; the timer is reset and any
        state left over from the previous session is discarded.
        """
        identity = snapshot.identity
        if self.identity is not None and self.identity.matches(identity.refs):
            identity = identity.merged(self.identity.refs)
        self._retire()
        self.identity = identity
        self.snapshot = replace(snapshot, identity=identity)
        if clock is not None:
            self.timer.receive(clock, self.snapshot.turn)
        self._set_phase(SessionPhase.IN_SESSION)
        logger.info(
            "Session %s installed (color=%s, opponent=%s, wager=%d)",
            identity, self.snapshot.local_color.value,
            self.snapshot.opponent_name, self.snapshot.wager,
        )
        self.events.emit(SnapshotApplied(self.snapshot))

    def acknowledge_result(self) -> bool:
        """Clear the result (play again / go home) and return to ``idle``."""
        if self.phase is not SessionPhase.ENDED:
            return False
        self._retire()
        self._set_phase(SessionPhase.IDLE)
        return True

    def reset(self) -> None:
        self._retire()
        self._set_phase(SessionPhase.IDLE)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def apply_snapshot(self, update: SnapshotUpdate) -> bool:
        """Apply an authoritative update; False if it was dropped as stale."""
        if self.phase is not SessionPhase.IN_SESSION or self.identity is None:
            logger.debug("Dropping snapshot: no active session (phase=%s)", self.phase.value)
            return False
        if update.refs and not self.identity.matches(update.refs):
            logger.warning(
                "Dropping stale snapshot for %s (current session %s)",
                _describe(update.refs), self.identity,
            )
            return False

        self.identity = self.identity.merged(update.refs)
        snapshot = replace(self.snapshot, identity=self.identity)
        if update.board_state is not None:
            snapshot = replace(snapshot, board_state=update.board_state)
        if update.turn is not None:
            snapshot = replace(snapshot, turn=update.turn)
        self.snapshot = snapshot
        if update.clock is not None:
            self.timer.receive(update.clock, snapshot.turn)
        if update.ended:
            self.premove = None
            self.timer.freeze()

        self.events.emit(SnapshotApplied(snapshot))
        self._maybe_send_premove()
        return True

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def submit_move(self, from_square: str, to_square: str, promotion: str | None = None) -> bool:
        """Forward a move intent. The snapshot is left alone until the server answers."""
        self._require_session("submit a move")
        move = LastMove(from_square, to_square, promotion)
        return self._send_move(move)

    def queue_premove(self, from_square: str, to_square: str, promotion: str | None = None) -> None:
        """Hold one move to be sent as soon as it becomes the local side's turn."""
        self._require_session("queue a premove")
        move = LastMove(from_square, to_square, promotion)
        if self.snapshot.is_local_turn:
            self._send_move(move)
            return
        self.premove = move
        logger.debug("Premove queued: %s", move.to_uci())

    def clear_premove(self) -> None:
        self.premove = None

    def resign(self) -> bool:
        """Send a resignation. No-op once the session has ended or a resign is pending."""
        if self.phase is not SessionPhase.IN_SESSION or self.identity is None:
            logger.debug("Resign ignored (phase=%s)", self.phase.value)
            return False
        if self.resign_pending:
            logger.debug("Resign already pending for %s", self.identity)
            return False

        self.resign_pending = True
        self.premove = None
        self.connection.send({"type": MSG_RESIGN, **self.identity.wire_fields()})
        logger.info("Resign sent for %s", self.identity)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return True
        self._resign_handle = loop.call_later(
            self.resign_timeout, self._on_resign_timeout, self.identity
        )
        return True

    def request_resync(self, event: ResyncRequested) -> None:
        """Heal state after a window in which pushes may have been missed."""
        self.premove = None
        if self.pending_join is not None:
            if event.reason is ResyncReason.RECONNECT:
                logger.info("Re-sending join for %s after reconnect", self.pending_join)
                self._send_join(self.pending_join)
            return
        if self.phase is SessionPhase.SEARCHING and self.search_request is not None:
            if event.reason is ResyncReason.RECONNECT:
                logger.info("Re-sending find_match after reconnect")
                self.send_find_match(self.search_request)
            return
        if self.phase is SessionPhase.IN_SESSION and self.identity is not None:
            logger.info("Resync (%s) for %s", event.reason.value, self.identity)
            self.connection.send({"type": MSG_SYNC_GAME, **self.identity.wire_fields()})
            return
        logger.debug("Resync (%s) with nothing to heal", event.reason.value)

    def send_find_match(self, request: MatchmakingRequest) -> bool:
        """Enqueue *request*; nothing is sent until the server has named the user."""
        user_id = getattr(self.connection, "user_id", None)
        if not user_id:
            logger.warning("Not sending find_match: user id unknown")
            return False
        return self.connection.send({
            "type": MSG_FIND_MATCH,
            "wager": request.wager,
            "playerName": request.display_name,
            "player_ids": [user_id],
        })

    # ------------------------------------------------------------------
    # Inbound handlers
    # ------------------------------------------------------------------

    def _on_game_reconnected(self, msg: dict) -> None:
        try:
            payload = GameReconnected.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid game_reconnected: %s", e)
            return
        refs = refs_from_payload(msg)
        if self.phase is SessionPhase.ENDED:
            logger.debug("Ignoring game_reconnected for %s after game end", _describe(refs))
            return
        if self.pending_join is not None and not self.pending_join.matches(refs):
            logger.warning(
                "Ignoring game_reconnected for %s while joining %s",
                _describe(refs), self.pending_join,
            )
            return
        if self.phase is SessionPhase.IN_SESSION and not self.identity.matches(refs):
            logger.warning(
                "Ignoring game_reconnected for %s during session %s",
                _describe(refs), self.identity,
            )
            return

        identity = GameIdentity(session_id=payload.game_id, persisted_id=payload.db_game_id)
        self.install(
            build_snapshot(
                identity,
                color=payload.color,
                board_state=payload.fen,
                fields=payload,
                opponent_name=payload.opponent_name or "Opponent",
                wager=payload.wager,
            ),
            clock=payload,
        )

    def _on_move_applied(self, msg: dict) -> None:
        try:
            payload = MoveApplied.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid move_applied: %s", e)
            return
        self.apply_snapshot(SnapshotUpdate(
            refs=refs_from_payload(msg),
            board_state=payload.fen,
            turn=Side(payload.turn),
            clock=payload if payload.has_clock else None,
        ))

    def _on_game_sync(self, msg: dict) -> None:
        try:
            payload = GameSync.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid game_sync: %s", e)
            return
        self.apply_snapshot(SnapshotUpdate(
            refs=refs_from_payload(msg),
            board_state=payload.fen,
            turn=Side(payload.turn),
            clock=payload if payload.has_clock else None,
            ended=(payload.status or "").lower() == "ended",
        ))

    def _on_clock(self, msg: dict) -> None:
        try:
            fields = ClockFields.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid clock message: %s", e)
            return
        self.apply_snapshot(SnapshotUpdate(
            refs=refs_from_payload(msg),
            turn=Side.from_wire(fields.turn or fields.current_turn),
            clock=fields if fields.has_clock else None,
        ))

    def _on_game_ended(self, msg: dict) -> None:
        if not self._accepts_terminal(msg, MSG_GAME_ENDED):
            return
        try:
            payload = GameEndedPayload.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid game_ended: %s", e)
            return

        winner = Side.from_wire(payload.winner_color)
        local = self.snapshot.local_color
        if winner is None and payload.reason not in _DISCONNECT_REASONS:
            outcome = Outcome.DRAW
        elif winner is local:
            outcome = Outcome.WIN
        else:
            outcome = Outcome.LOSS
        opponent_left = payload.reason in _OPPONENT_LEFT_REASONS or (
            payload.reason == "resign" and outcome is Outcome.WIN
        )
        self._end(GameEndResult(
            outcome=outcome,
            reason_text=result_text(outcome, payload.reason, opponent_left=opponent_left),
            stake_delta=stake_delta(outcome, self.snapshot.wager),
            opponent_disconnected=opponent_left,
            reason=payload.reason,
            winner=winner,
        ))

    def _on_opponent_left(self, msg: dict) -> None:
        if not self._accepts_terminal(msg, MSG_OPPONENT_LEFT):
            return
        try:
            payload = OpponentLeft.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid opponent_left: %s", e)
            return
        self._end(GameEndResult(
            outcome=Outcome.WIN,
            reason_text=result_text(Outcome.WIN, payload.reason, opponent_left=True),
            stake_delta=stake_delta(Outcome.WIN, self.snapshot.wager),
            opponent_disconnected=True,
            reason=payload.reason,
            winner=self.snapshot.local_color,
        ))

    def _on_error(self, msg: dict) -> None:
        try:
            error = ServerError.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid error message: %s", e)
            return

        if error.code in WAGER_ERRORS and self.phase is SessionPhase.SEARCHING:
            logger.warning("Search rejected by server: %s %s", error.code, error.message)
            self._retire()
            self._set_phase(SessionPhase.IDLE)
        elif error.code == ERR_ALREADY_IN_GAME and self.phase is not SessionPhase.IN_SESSION:
            logger.warning("Server reports an active game we do not know about; reconnecting")
            self._retire()
            self._set_phase(SessionPhase.IDLE)
            self._heal_task = asyncio.ensure_future(self.connection.restart())
            self._heal_task.add_done_callback(log_task_failure)
        else:
            logger.debug("Server error %s not handled by session: %s", error.code, error.message)
            return
        self.events.emit(ServerErrorReceived(error.code, error.message))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _accepts_terminal(self, msg: dict, kind: str) -> bool:
        refs = refs_from_payload(msg)
        if self.identity is None or self.phase not in (SessionPhase.IN_SESSION, SessionPhase.ENDED):
            logger.debug("Ignoring %s for %s: no local session", kind, _describe(refs))
            return False
        if refs and not self.identity.matches(refs):
            logger.warning(
                "Dropping stale %s for %s (current session %s)",
                kind, _describe(refs), self.identity,
            )
            return False
        if self.phase is SessionPhase.ENDED:
            logger.debug("Duplicate %s for %s ignored", kind, self.identity)
            return False
        return True

    def _end(self, result: GameEndResult) -> None:
        self._cancel_resign_timer()
        self.premove = None
        self.end_result = result
        self.timer.freeze()
        self._set_phase(SessionPhase.ENDED)
        logger.info(
            "Session %s ended: %s (%s, stake %+d)",
            self.identity, result.outcome.value, result.reason, result.stake_delta,
        )
        self.events.emit(GameEnded(result))

    def _retire(self) -> None:
        self._cancel_resign_timer()
        self.resign_pending = False
        self.identity = None
        self.snapshot = None
        self.end_result = None
        self.search_request = None
        self.pending_join = None
        self.premove = None
        self.timer.reset()

    def _set_phase(self, phase: SessionPhase) -> None:
        if self.phase is phase:
            return
        previous, self.phase = self.phase, phase
        logger.debug("Session phase %s -> %s", previous.value, phase.value)
        self.events.emit(PhaseChanged(previous, phase))

    def _require_session(self, action: str) -> None:
        if self.phase is not SessionPhase.IN_SESSION or self.identity is None:
            raise InvalidRequestError(f"Cannot {action}: no game in progress")

    def _send_move(self, move: LastMove) -> bool:
        game_id = self.identity.session_id or self.identity.persisted_id
        return self.connection.send({"type": MSG_MOVE, "gameId": game_id, "move": move.to_uci()})

    def _send_join(self, identity: GameIdentity) -> None:
        self.connection.send({
            "type": MSG_JOIN_GAME,
            "gameId": identity.persisted_id or identity.session_id,
        })

    def _maybe_send_premove(self) -> None:
        if self.premove is None or not self.snapshot.is_local_turn:
            return
        move, self.premove = self.premove, None
        logger.debug("Sending premove %s", move.to_uci())
        self._send_move(move)

    def _on_resign_timeout(self, identity: GameIdentity) -> None:
        self._resign_handle = None
        if (self.phase is SessionPhase.IN_SESSION and self.identity is not None
                and self.identity.matches(identity.refs)):
            logger.warning("No game end received %.0fs after resign for %s", self.resign_timeout, identity)
            self.events.emit(ResignTimedOut(identity))

    def _cancel_resign_timer(self) -> None:
        if self._resign_handle is not None:
            self._resign_handle.cancel()
            self._resign_handle = None


def _describe(refs) -> str:
    return ",".join(sorted(f"{type(r).__name__.lower()}:{r.id}" for r in refs)) or "<no id>"
