"""Matchmaking Controller: wager validation, enqueue/cancel, match-found."""

import logging
from typing import Callable

from pydantic import ValidationError

from .errors import InvalidRequestError
from .identity import GameIdentity, refs_from_payload
from .messages import MatchFound
from .models import MatchmakingRequest, SessionPhase
from .session import GameSessionReconciler, build_snapshot
from .ws_constants import MSG_CANCEL_SEARCH, MSG_MATCH_FOUND, MSG_SEARCHING

logger = logging.getLogger(__name__)


class MatchmakingController:
    """Presents at most one outstanding search to the server.

    ``balance`` returns the best known balance, or None when it is unknown;
    with an unknown balance only free (wager 0) games can be requested.
    """

    def __init__(
        self,
        connection,
        session: GameSessionReconciler,
        *,
        balance: Callable[[], int | None] | None = None,
    ):
        self.connection = connection
        self.session = session
        self._balance = balance or (lambda: None)
        self._unsubscribe = [
            connection.on(MSG_MATCH_FOUND, self._on_match_found),
            connection.on(MSG_SEARCHING, self._on_searching),
        ]

    @property
    def request(self) -> MatchmakingRequest | None:
        return self.session.search_request

    @property
    def is_searching(self) -> bool:
        return self.session.phase is SessionPhase.SEARCHING and self.request is not None

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def find_match(self, wager: int, display_name: str) -> MatchmakingRequest:
        """Validate locally, then enqueue. Raises InvalidRequestError before any send."""
        if isinstance(wager, bool) or not isinstance(wager, int):
            raise InvalidRequestError(f"Wager must be a whole number, got {wager!r}")
        if wager < 0:
            raise InvalidRequestError("Wager cannot be negative")
        if self.session.phase is SessionPhase.SEARCHING:
            raise InvalidRequestError("Already searching for a match")
        if self.session.phase is SessionPhase.IN_SESSION:
            raise InvalidRequestError("A game is already in progress")
        if not getattr(self.connection, "user_id", None):
            raise InvalidRequestError("Not signed in; wait for the server to confirm the account")
        if wager > 0:
            balance = self._balance()
            if balance is None:
                raise InvalidRequestError("Balance unknown; only free games are available")
            if wager > balance:
                raise InvalidRequestError(f"Wager {wager} exceeds balance {balance}")

        request = MatchmakingRequest(wager=wager, display_name=(display_name or "").strip() or "Player")
        self.session.begin_search(request)
        self.session.send_find_match(request)
        logger.info("Searching for a match (wager=%d)", wager)
        return request

    def cancel_search(self) -> bool:
        """Leave the queue. Returns False, and sends nothing, when not searching."""
        if not self.is_searching:
            logger.debug("cancel_search ignored (phase=%s)", self.session.phase.value)
            return False
        self.connection.send({"type": MSG_CANCEL_SEARCH})
        self.session.end_search()
        logger.info("Search cancelled")
        return True

    def _on_searching(self, msg: dict) -> None:
        logger.debug("Server confirmed search (wager=%s)", msg.get("wager"))

    def _on_match_found(self, msg: dict) -> None:
        try:
            payload = MatchFound.model_validate(msg)
        except ValidationError as e:
            logger.warning("Invalid match_found: %s", e)
            return

        refs = refs_from_payload(msg)
        pending = self.session.pending_join
        if pending is not None:
            if not pending.matches(refs):
                logger.warning("Ignoring match_found %s while joining %s", payload.game_id, pending)
                return
        elif not self.is_searching:
            logger.warning("Ignoring match_found %s: no outstanding search", payload.game_id)
            return

        identity = GameIdentity(session_id=payload.game_id, persisted_id=payload.db_game_id)
        logger.info("Match found: %s vs %s", identity, payload.opponent_display)
        self.session.install(
            build_snapshot(
                identity,
                color=payload.color,
                board_state=payload.fen,
                fields=payload,
                opponent_name=payload.opponent_display,
                wager=payload.wager,
            ),
            clock=payload,
        )
