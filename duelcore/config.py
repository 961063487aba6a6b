"""Runtime configuration read from the environment.

Every value here is also accepted as a constructor keyword by the component
that uses it, so callers (and tests) can override without touching the
environment.
"""

import os
from pathlib import Path

# --- Endpoints ---

WS_URL = os.environ.get("DUEL_WS_URL", "ws://localhost:8000/ws")
API_URL = os.environ.get("DUEL_API_URL", "http://localhost:8000")
BALANCE_CACHE_PATH = Path(
    os.environ.get("DUEL_BALANCE_CACHE", str(Path.home() / ".duelcore" / "balance.json"))
)

# --- Connection ---

AUTH_TIMEOUT_SECONDS = float(os.environ.get("DUEL_AUTH_TIMEOUT", "10"))
# Capped backoff: 1s -> 2s -> 5s -> 10s, the last delay repeats.
RECONNECT_DELAYS = (1.0, 2.0, 5.0, 10.0)
MAX_RECONNECT_ATTEMPTS = int(os.environ.get("DUEL_MAX_RECONNECT_ATTEMPTS", "6"))
MAX_QUEUE_SIZE = 100
WIRE_LOG_SIZE = 30

# --- Lobbies ---

LOBBY_REQUEST_TIMEOUT_SECONDS = float(os.environ.get("DUEL_LOBBY_TIMEOUT", "10"))
LOBBY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
LOBBY_CODE_LENGTH = 6

# --- Time control (milliseconds) ---

BASE_TIME_MS = 60_000
LOW_TIME_THRESHOLD_MS = 10_000
CRITICAL_TIME_THRESHOLD_MS = 5_000
CLOCK_TICK_SECONDS = 0.1

# --- Session ---

RESIGN_ACK_TIMEOUT_SECONDS = 7.0
BALANCE_REFRESH_MIN_INTERVAL = 5.0  # seconds
HTTP_TIMEOUT_SECONDS = 10.0
