"""Domain state types shared by the session core.

These are plain enums and frozen dataclasses. A snapshot is never edited in
place: a newer one replaces it wholesale.
"""

from dataclasses import dataclass
from enum import Enum

from .identity import GameIdentity


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class SessionPhase(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    IN_SESSION = "in_session"
    ENDED = "ended"


class Side(str, Enum):
    """Seat at the board. The wire uses ``w`` / ``b``."""
    FIRST = "w"
    SECOND = "b"

    @property
    def opponent(self) -> "Side":
        return Side.SECOND if self is Side.FIRST else Side.FIRST

    @classmethod
    def from_wire(cls, value: str | None) -> "Side | None":
        if value is None:
            return None
        return cls(value)


class Outcome(str, Enum):
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"


@dataclass(frozen=True)
class MatchmakingRequest:
    wager: int
    display_name: str


@dataclass(frozen=True)
class GameSnapshot:
    identity: GameIdentity
    local_color: Side
    board_state: str
    turn: Side
    opponent_name: str
    wager: int

    @property
    def is_local_turn(self) -> bool:
        return self.turn is self.local_color


@dataclass(frozen=True)
class GameEndResult:
    outcome: Outcome
    reason_text: str
    stake_delta: int
    opponent_disconnected: bool
    reason: str = "game_over"
    winner: Side | None = None


@dataclass(frozen=True)
class LastMove:
    from_square: str
    to_square: str
    promotion: str | None = None

    @classmethod
    def parse(cls, move) -> "LastMove | None":
        """Accept either a UCI string (``e7e8q``) or ``{from, to, promotion}``."""
        if isinstance(move, dict):
            src, dst = move.get("from"), move.get("to")
            if isinstance(src, str) and isinstance(dst, str):
                return cls(src, dst, move.get("promotion") or None)
            return None
        if isinstance(move, str) and len(move) >= 4:
            return cls(move[0:2], move[2:4], move[4:5] or None)
        return None

    def to_uci(self) -> str:
        promotion = self.promotion.lower() if self.promotion else ""
        return f"{self.from_square.lower()}{self.to_square.lower()}{promotion}"
