"""Tests for duelcore.spectator -- read-only attach to another player's game."""

import pytest

from duelcore.errors import InvalidRequestError
from duelcore.models import LastMove, Side
from duelcore.spectator import (
    SpectatorChannel,
    SpectatorEnded,
    SpectatorFailed,
    SpectatorSession,
    SpectatorStatus,
    SpectatorUpdated,
)
from tests.conftest import START_FEN, AFTER_E4_FEN, clock_update, game_ended, move_applied


@pytest.fixture
def watcher(conn, timer):
    return SpectatorSession(SpectatorChannel(conn), timer=timer)


@pytest.fixture
def seen(watcher):
    received = []
    watcher.subscribe(received.append)
    return received


def _started(game_id="g_9", **extra) -> dict:
    msg = {
        "type": "spectate_started",
        "gameId": game_id,
        "fen": START_FEN,
        "whiteId": "user-5",
        "blackId": "user-6",
        "wager": 250,
        "wMs": 60_000,
        "bMs": 60_000,
        "turn": "w",
        "clockRunning": True,
    }
    msg.update(extra)
    return msg


class TestReadOnly:

    @pytest.mark.parametrize("name", ["submit_move", "queue_premove", "resign", "send"])
    def test_no_move_or_resign_capability(self, watcher, name):
        assert not hasattr(watcher, name)
        assert not hasattr(SpectatorChannel, name)

    def test_attach_sends_only_spectate_request(self, watcher, conn):
        watcher.attach("user-5")
        assert conn.sent == [{"type": "spectate_game", "targetUserId": "user-5"}]
        assert watcher.status is SpectatorStatus.ATTACHING

    def test_updates_never_send(self, watcher, conn):
        watcher.attach("user-5")
        conn.deliver(_started())
        conn.deliver(move_applied("g_9"))
        conn.deliver(clock_update("g_9", turn="b"))
        conn.deliver(game_ended("g_9"))
        assert conn.sent_types() == ["spectate_game"]


class TestAttach:

    def test_started_populates_view(self, watcher, conn, seen):
        watcher.attach("user-5")
        conn.deliver(_started())
        assert watcher.status is SpectatorStatus.WATCHING
        assert watcher.view.identity.session_id == "g_9"
        assert watcher.view.white_id == "user-5"
        assert watcher.view.wager == 250
        assert watcher.view.turn is Side.FIRST
        assert isinstance(seen[-1], SpectatorUpdated)

    def test_move_as_uci_string(self, watcher, conn):
        watcher.attach("user-5")
        conn.deliver(_started())
        conn.deliver(move_applied("g_9", move="e2e4"))
        assert watcher.view.board_state == AFTER_E4_FEN
        assert watcher.view.turn is Side.SECOND
        assert watcher.view.last_move == LastMove("e2", "e4")

    def test_move_as_object(self, watcher, conn):
        watcher.attach("user-5")
        conn.deliver(_started())
        conn.deliver(move_applied("g_9", move={"from": "e7", "to": "e8", "promotion": "q"}))
        assert watcher.view.last_move == LastMove("e7", "e8", "q")

    def test_messages_for_other_games_ignored(self, watcher, conn):
        watcher.attach("user-5")
        conn.deliver(_started())
        conn.deliver(move_applied("g_other"))
        assert watcher.view.board_state == START_FEN

    def test_message_without_game_id_applies_to_watched_game(self, watcher, conn):
        watcher.attach("user-5")
        conn.deliver(_started())
        conn.deliver(move_applied(None))
        assert watcher.view.board_state == AFTER_E4_FEN
        assert watcher.view.identity.session_id == "g_9"

    def test_updates_before_start_ignored(self, watcher, conn):
        watcher.attach("user-5")
        conn.deliver(move_applied("g_9"))
        assert watcher.view is None
        assert watcher.status is SpectatorStatus.ATTACHING

    def test_clock_update_moves_timer(self, watcher, conn, timer):
        watcher.attach("user-5")
        conn.deliver(_started())
        conn.deliver(clock_update("g_9", w_ms=41_000, b_ms=37_000, turn="b"))
        assert timer.remaining(Side.FIRST) == 41_000
        assert timer.remaining(Side.SECOND) == 37_000
        assert watcher.view.turn is Side.SECOND

    def test_attach_twice_raises(self, watcher):
        watcher.attach("user-5")
        with pytest.raises(InvalidRequestError):
            watcher.attach("user-6")

    def test_empty_target_raises(self, watcher, conn):
        with pytest.raises(InvalidRequestError):
            watcher.attach("  ")
        assert conn.sent == []


class TestEndAndFailure:

    def test_game_end_summary_then_ignore(self, watcher, conn, seen, clock, timer):
        watcher.attach("user-5")
        conn.deliver(_started())
        conn.deliver(game_ended("g_9", winner="b", reason="resign"))

        assert watcher.status is SpectatorStatus.ENDED
        assert watcher.summary.winner is Side.SECOND
        assert watcher.summary.reason == "resign"
        assert isinstance(seen[-1], SpectatorEnded)

        frozen = timer.remaining(Side.FIRST)
        clock.advance(5_000)
        assert timer.remaining(Side.FIRST) == frozen

        conn.deliver(move_applied("g_9"))
        assert watcher.view.board_state == START_FEN

    def test_already_finished_game(self, watcher, conn):
        watcher.attach("user-5")
        conn.deliver(_started(isEnded=True))
        assert watcher.status is SpectatorStatus.ENDED
        assert watcher.summary.winner is None

    def test_no_active_game_fails(self, watcher, conn, seen):
        watcher.attach("user-5")
        conn.deliver({"type": "error", "code": "NO_ACTIVE_GAME", "message": "Not playing"})
        assert watcher.status is SpectatorStatus.FAILED
        assert seen == [SpectatorFailed("NO_ACTIVE_GAME", "Not playing")]

    def test_unrelated_error_ignored(self, watcher, conn):
        watcher.attach("user-5")
        conn.deliver({"type": "error", "code": "LOBBY_FULL", "message": "x"})
        assert watcher.status is SpectatorStatus.ATTACHING


class TestDetach:

    def test_detach_sends_leave_and_stops_processing(self, watcher, conn):
        watcher.attach("user-5")
        conn.deliver(_started())
        watcher.detach()
        assert conn.sent_types() == ["spectate_game", "leave_spectate"]
        assert watcher.status is SpectatorStatus.DETACHED

        conn.deliver(move_applied("g_9"))
        assert watcher.view is None

    def test_detach_after_end_sends_nothing(self, watcher, conn):
        watcher.attach("user-5")
        conn.deliver(_started())
        conn.deliver(game_ended("g_9"))
        watcher.detach()
        assert conn.sent_types() == ["spectate_game"]

    def test_detach_when_not_attached_is_noop(self, watcher, conn):
        watcher.detach()
        assert conn.sent == []

    def test_can_attach_again_after_detach(self, watcher, conn):
        watcher.attach("user-5")
        watcher.detach()
        watcher.attach("user-6")
        assert conn.sent[-1] == {"type": "spectate_game", "targetUserId": "user-6"}
