"""Last-known balance on disk, shown before the account API answers.

Best effort only: a missing or corrupt file reads as "unknown", and a failed
write is logged and forgotten. Never consulted for game outcomes.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path

from .config import BALANCE_CACHE_PATH

logger = logging.getLogger(__name__)


class BalanceCache:
    def __init__(self, filepath: str | Path = BALANCE_CACHE_PATH):
        self.filepath = Path(filepath).expanduser().resolve()
        self._data: dict[str, dict] = {}
        self._lock = asyncio.Lock()
        self._load_sync()

    def _load_sync(self):
        if self.filepath.exists():
            try:
                with open(self.filepath) as f:
                    data = json.load(f)
                self._data = data if isinstance(data, dict) else {}
            except (json.JSONDecodeError, OSError):
                logger.warning("Corrupt balance cache %s, starting fresh", self.filepath)
                self._data = {}

    def _save_sync(self):
        """Atomic write of the whole cache file; runs in a worker thread."""
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.filepath.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_path, self.filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def get(self, user_id: str) -> int | None:
        entry = self._data.get(user_id)
        if not isinstance(entry, dict):
            return None
        balance = entry.get("balance")
        if isinstance(balance, int) and not isinstance(balance, bool):
            return balance
        return None

    async def store(self, user_id: str, balance: int) -> None:
        async with self._lock:
            self._data[user_id] = {
                "balance": balance,
                "updated_at": datetime.now().isoformat(),
            }
            try:
                await asyncio.to_thread(self._save_sync)
            except OSError:
                logger.warning("Could not write balance cache %s", self.filepath, exc_info=True)
