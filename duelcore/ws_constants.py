"""Match-server protocol constants: message types and error codes.

Pure data module -- no imports, no logic. Safe to import from any duelcore
module without risk of circular dependencies.
"""

# ── Client -> Server message types ────────────────────────────────────

MSG_AUTH = "auth"
MSG_FIND_MATCH = "find_match"
MSG_CANCEL_SEARCH = "cancel_search"
MSG_CREATE_LOBBY = "create_lobby"
MSG_JOIN_LOBBY = "join_lobby"
MSG_LEAVE_LOBBY = "leave_lobby"
MSG_JOIN_GAME = "join_game"
MSG_MOVE = "move"
MSG_RESIGN = "resign"
MSG_SYNC_GAME = "sync_game"
MSG_SPECTATE_GAME = "spectate_game"
MSG_LEAVE_SPECTATE = "leave_spectate"

# ── Server -> Client message types ────────────────────────────────────

MSG_WELCOME = "welcome"
MSG_SEARCHING = "searching"
MSG_MATCH_FOUND = "match_found"
MSG_LOBBY_CREATED = "lobby_created"
MSG_ROOM_UPDATE = "room_update"
MSG_GAME_RECONNECTED = "game_reconnected"
MSG_MOVE_APPLIED = "move_applied"
MSG_GAME_SYNC = "game_sync"
MSG_CLOCK_SNAPSHOT = "clock_snapshot"
MSG_CLOCK_UPDATE = "clock_update"
MSG_GAME_ENDED = "game_ended"
MSG_OPPONENT_LEFT = "opponent_left"
MSG_CREDITS_SETTLED = "credits_settled"
MSG_SPECTATE_STARTED = "spectate_started"
MSG_ERROR = "error"

# Message kinds that carry an authoritative clock reading.
CLOCK_MESSAGES = (MSG_CLOCK_SNAPSHOT, MSG_CLOCK_UPDATE)

# ── Error codes (machine-readable, included in MSG_ERROR messages) ────

ERR_INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
ERR_WAGER_DENIED = "WAGER_DENIED"
ERR_ALREADY_IN_GAME = "ALREADY_IN_GAME"
ERR_NO_ACTIVE_GAME = "NO_ACTIVE_GAME"
ERR_MISSING_TARGET = "MISSING_TARGET"
ERR_NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
ERR_LOBBY_NOT_FOUND = "LOBBY_NOT_FOUND"
ERR_LOBBY_FULL = "LOBBY_FULL"
ERR_LOBBY_EXPIRED = "LOBBY_EXPIRED"

SPECTATE_ERRORS = (ERR_NO_ACTIVE_GAME, ERR_MISSING_TARGET, ERR_NOT_AUTHENTICATED)
LOBBY_ERRORS = (ERR_LOBBY_NOT_FOUND, ERR_LOBBY_FULL, ERR_LOBBY_EXPIRED)
WAGER_ERRORS = (ERR_INSUFFICIENT_BALANCE, ERR_WAGER_DENIED)

# ── WebSocket close codes ─────────────────────────────────────────────

CLOSE_UNAUTHORIZED = 4001
CLOSE_FORBIDDEN = 4003
AUTH_CLOSE_CODES = (CLOSE_UNAUTHORIZED, CLOSE_FORBIDDEN)
