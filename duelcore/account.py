"""Account data API: balance and display name over plain HTTP.

``AccountClient`` is a thin httpx wrapper. ``BalanceTracker`` keeps the best
known balance for wager validation, throttles refreshes, and mirrors every
fetched value into the local ``BalanceCache`` for instant display on the
next start.
"""

import logging
import time
from typing import Awaitable, Callable

import httpx
from pydantic import Field, ValidationError

from .balance_cache import BalanceCache
from .config import API_URL, BALANCE_REFRESH_MIN_INTERVAL, HTTP_TIMEOUT_SECONDS
from .errors import AccountError
from .events import Listeners
from .messages import WireModel

logger = logging.getLogger(__name__)

BALANCE_PATH = "/api/account/balance"
PROFILE_PATH = "/api/account/profile"


class BalanceResponse(WireModel):
    balance: int = Field(..., ge=0)


class ProfileResponse(WireModel):
    display_name: str | None = Field(None, alias="displayName")
    user_id: str | None = Field(None, alias="userId")


class AccountClient:
    def __init__(
        self,
        base_url: str = API_URL,
        *,
        token: str | None = None,
        token_provider: Callable[[], Awaitable[str | None]] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self._token = token
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "AccountClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _headers(self) -> dict[str, str]:
        token = self._token
        if self._token_provider is not None:
            token = await self._token_provider() or token
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _get(self, path: str) -> dict:
        try:
            resp = await self._client.get(path, headers=await self._headers())
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise AccountError(f"GET {path} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise AccountError(f"GET {path} failed: {e}") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise AccountError(f"GET {path} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise AccountError(f"GET {path} returned {type(data).__name__}, expected an object")
        return data

    async def get_balance(self) -> int:
        data = await self._get(BALANCE_PATH)
        try:
            return BalanceResponse.model_validate(data).balance
        except ValidationError as e:
            raise AccountError(f"Unexpected balance payload: {e}") from e

    async def get_display_name(self) -> str | None:
        data = await self._get(PROFILE_PATH)
        try:
            return ProfileResponse.model_validate(data).display_name
        except ValidationError as e:
            raise AccountError(f"Unexpected profile payload: {e}") from e


class BalanceTracker:
    """Best known balance: the last fetched value, else the cached one."""

    def __init__(
        self,
        account: AccountClient,
        cache: BalanceCache | None = None,
        *,
        user_id: str | None = None,
        min_interval: float = BALANCE_REFRESH_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.account = account
        self.cache = cache
        self.user_id = user_id
        self.min_interval = min_interval
        self._clock = clock
        self.balance: int | None = None
        self._last_refresh: float | None = None
        self.listeners = Listeners("balance")

    @property
    def _cache_key(self) -> str:
        return self.user_id or "default"

    @property
    def known_balance(self) -> int | None:
        if self.balance is not None:
            return self.balance
        if self.cache is not None:
            return self.cache.get(self._cache_key)
        return None

    def on_change(self, callback: Callable[[int], None]) -> Callable[[], None]:
        return self.listeners.add(callback)

    async def refresh(self, *, force: bool = False) -> int | None:
        """Fetch the balance unless the last fetch was under ``min_interval`` ago."""
        now = self._clock()
        if not force and self._last_refresh is not None and now - self._last_refresh < self.min_interval:
            logger.debug("Balance refresh throttled")
            return self.known_balance
        self._last_refresh = now

        try:
            balance = await self.account.get_balance()
        except AccountError as e:
            logger.warning("Balance refresh failed: %s", e)
            return self.known_balance

        changed = balance != self.balance
        self.balance = balance
        if self.cache is not None:
            await self.cache.store(self._cache_key, balance)
        if changed:
            logger.info("Balance is now %d", balance)
            self.listeners.emit(balance)
        return balance
