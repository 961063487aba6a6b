"""Pydantic models for inbound match-server payloads.

Only the fields the client relies on are declared; anything else the server
sends is ignored. Parsing failures raise ``pydantic.ValidationError`` and
the handler that asked for the model logs and drops the message.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

WireColor = Literal["w", "b"]

START_POSITION = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ClockFields(WireModel):
    """Clock reading, in whichever form the server sent it.

    ``wMs`` / ``bMs`` are milliseconds. ``whiteTime`` / ``blackTime`` are the
    legacy seconds fields, used only when the ms fields are missing.
    """

    w_ms: int | None = Field(None, alias="wMs")
    b_ms: int | None = Field(None, alias="bMs")
    white_time: float | None = Field(None, alias="whiteTime")
    black_time: float | None = Field(None, alias="blackTime")
    turn: WireColor | None = None
    current_turn: WireColor | None = Field(None, alias="currentTurn")
    clock_running: bool = Field(False, alias="clockRunning")
    server_now: int | None = Field(None, alias="serverNow")
    server_time_ms: int | None = Field(None, alias="serverTimeMs")

    @property
    def has_clock(self) -> bool:
        return any(
            v is not None for v in (self.w_ms, self.b_ms, self.white_time, self.black_time)
        )


class OpponentInfo(WireModel):
    name: str | None = None
    player_id: str | None = Field(None, alias="playerId")


class Welcome(WireModel):
    user_id: str | None = Field(None, alias="userId")
    player_name: str | None = Field(None, alias="playerName")


class MatchFound(ClockFields):
    game_id: str = Field(..., alias="gameId", min_length=1)
    db_game_id: str | None = Field(None, alias="dbGameId")
    color: WireColor
    fen: str = Field(..., min_length=1)
    wager: int = 0
    opponent: OpponentInfo | None = None
    opponent_name: str | None = Field(None, alias="opponentName")

    @property
    def opponent_display(self) -> str:
        if self.opponent and self.opponent.name:
            return self.opponent.name
        return self.opponent_name or "Opponent"


class GameReconnected(ClockFields):
    game_id: str = Field(..., alias="gameId", min_length=1)
    db_game_id: str | None = Field(None, alias="dbGameId")
    color: WireColor
    fen: str = Field(..., min_length=1)
    wager: int = 0
    opponent_name: str | None = Field(None, alias="opponentName")


class MoveApplied(ClockFields):
    fen: str
    turn: WireColor
    move: str | dict[str, Any] | None = None


class GameSync(ClockFields):
    fen: str
    turn: WireColor
    status: str | None = None


class GameEndedPayload(WireModel):
    reason: str = "game_over"
    winner_color: WireColor | None = Field(None, alias="winnerColor")


class OpponentLeft(WireModel):
    reason: str = "opponent_disconnect"


class LobbyCreated(WireModel):
    code: str
    wager: int = 0
    lobby_id: str | None = Field(None, alias="lobbyId")


class RoomUpdate(WireModel):
    code: str
    status: str
    db_game_id: str | None = Field(None, alias="dbGameId")
    wager: int | None = None


class SpectateStarted(ClockFields):
    game_id: str = Field(..., alias="gameId", min_length=1)
    db_game_id: str | None = Field(None, alias="dbGameId")
    fen: str = START_POSITION
    white_id: str = Field("", alias="whiteId")
    black_id: str = Field("", alias="blackId")
    wager: int = 0
    is_ended: bool = Field(False, alias="isEnded")


class ServerError(WireModel):
    code: str = ""
    message: str = ""
