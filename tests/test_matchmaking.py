"""Tests for duelcore.matchmaking -- local wager validation and search lifecycle."""

import pytest

from duelcore.errors import InvalidRequestError
from duelcore.matchmaking import MatchmakingController
from duelcore.models import SessionPhase
from tests.conftest import game_ended, match_found


@pytest.fixture
def balance():
    """Mutable balance the controller reads through."""
    return {"value": 400}


@pytest.fixture
def mm(conn, session, balance):
    controller = MatchmakingController(conn, session, balance=lambda: balance["value"])
    yield controller
    controller.close()


class TestFindMatch:

    def test_wager_above_balance_rejected_without_network_call(self, mm, conn, session):
        with pytest.raises(InvalidRequestError):
            mm.find_match(500, "Alice")
        assert conn.sent == []
        assert session.phase is SessionPhase.IDLE

    def test_negative_wager_rejected(self, mm, conn):
        with pytest.raises(InvalidRequestError):
            mm.find_match(-1, "Alice")
        assert conn.sent == []

    @pytest.mark.parametrize("wager", [1.5, "100", True, None])
    def test_non_integer_wager_rejected(self, mm, conn, wager):
        with pytest.raises(InvalidRequestError):
            mm.find_match(wager, "Alice")
        assert conn.sent == []

    def test_unknown_balance_allows_only_free_games(self, mm, conn, balance):
        balance["value"] = None
        with pytest.raises(InvalidRequestError):
            mm.find_match(10, "Alice")
        mm.find_match(0, "Alice")
        assert conn.sent_types() == ["find_match"]

    def test_wager_equal_to_balance_is_allowed(self, mm, conn, session):
        request = mm.find_match(400, "Alice")
        assert request.wager == 400
        assert session.phase is SessionPhase.SEARCHING
        assert conn.sent == [
            {"type": "find_match", "wager": 400, "playerName": "Alice", "player_ids": ["user-1"]}
        ]

    def test_search_without_user_id_rejected_without_network_call(self, mm, conn, session):
        conn.user_id = None
        with pytest.raises(InvalidRequestError):
            mm.find_match(0, "Alice")
        assert conn.sent == []
        assert session.phase is SessionPhase.IDLE

    def test_blank_name_falls_back(self, mm):
        assert mm.find_match(0, "   ").display_name == "Player"

    def test_second_search_rejected(self, mm, conn):
        mm.find_match(0, "Alice")
        with pytest.raises(InvalidRequestError):
            mm.find_match(0, "Alice")
        assert conn.sent_types() == ["find_match"]

    def test_search_during_game_rejected(self, mm, conn):
        mm.find_match(0, "Alice")
        conn.deliver(match_found("g_1"))
        with pytest.raises(InvalidRequestError):
            mm.find_match(0, "Alice")

    def test_search_from_ended_clears_old_result(self, mm, conn, session):
        mm.find_match(0, "Alice")
        conn.deliver(match_found("g_1"))
        conn.deliver(game_ended("g_1"))
        mm.find_match(0, "Alice")
        assert session.phase is SessionPhase.SEARCHING
        assert session.end_result is None
        assert session.identity is None


class TestCancelSearch:

    @pytest.mark.parametrize("setup", ["idle", "in_session", "ended"])
    def test_cancel_when_not_searching_is_a_no_op(self, mm, conn, session, setup):
        if setup != "idle":
            mm.find_match(0, "Alice")
            conn.deliver(match_found("g_1"))
        if setup == "ended":
            conn.deliver(game_ended("g_1"))
        phase_before = session.phase
        sent_before = list(conn.sent)

        assert mm.cancel_search() is False
        assert session.phase is phase_before
        assert conn.sent == sent_before

    def test_cancel_while_searching(self, mm, conn, session):
        mm.find_match(0, "Alice")
        assert mm.cancel_search() is True
        assert conn.sent_types() == ["find_match", "cancel_search"]
        assert session.phase is SessionPhase.IDLE
        assert mm.request is None

    def test_cancel_twice(self, mm, conn):
        mm.find_match(0, "Alice")
        mm.cancel_search()
        assert mm.cancel_search() is False
        assert conn.sent_types() == ["find_match", "cancel_search"]


class TestMatchFound:

    def test_match_found_without_search_is_ignored(self, mm, conn, session):
        conn.deliver(match_found("g_1"))
        assert session.phase is SessionPhase.IDLE

    def test_match_found_after_cancel_is_ignored(self, mm, conn, session):
        mm.find_match(0, "Alice")
        mm.cancel_search()
        conn.deliver(match_found("g_1"))
        assert session.phase is SessionPhase.IDLE

    def test_first_match_found_wins(self, mm, conn, session):
        mm.find_match(0, "Alice")
        conn.deliver(match_found("g_1"))
        conn.deliver(match_found("g_2"))
        assert session.identity.session_id == "g_1"

    def test_opponent_name_fallbacks(self, mm, conn, session):
        mm.find_match(0, "Alice")
        msg = match_found("g_1")
        del msg["opponent"]
        msg["opponentName"] = "Dana"
        conn.deliver(msg)
        assert session.snapshot.opponent_name == "Dana"

    def test_invalid_match_found_is_dropped(self, mm, conn, session):
        mm.find_match(0, "Alice")
        conn.deliver({"type": "match_found", "gameId": "g_1"})
        assert session.phase is SessionPhase.SEARCHING
        assert mm.is_searching
