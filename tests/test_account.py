"""Tests for duelcore.account and duelcore.balance_cache.

The account API is served by an ``httpx.MockTransport`` so no network is
touched; the cache writes into pytest's tmp_path.
"""

import json

import httpx
import pytest

from duelcore.account import BALANCE_PATH, PROFILE_PATH, AccountClient, BalanceTracker
from duelcore.balance_cache import BalanceCache
from duelcore.errors import AccountError


def _account(handler, **kwargs) -> AccountClient:
    return AccountClient("http://api.test", transport=httpx.MockTransport(handler), **kwargs)


def _balance_server(values, seen=None):
    """Serve successive balances from *values*, recording each request."""
    values = list(values)

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path == BALANCE_PATH:
            return httpx.Response(200, json={"balance": values.pop(0)})
        return httpx.Response(404)

    return handler


class ManualClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


# ===================================================================
# AccountClient
# ===================================================================


class TestAccountClient:

    @pytest.mark.asyncio
    async def test_balance_with_bearer_token(self):
        seen = []
        async with _account(_balance_server([1250], seen), token="tok-1") as account:
            assert await account.get_balance() == 1250
        assert seen[0].headers["Authorization"] == "Bearer tok-1"
        assert seen[0].url.path == BALANCE_PATH

    @pytest.mark.asyncio
    async def test_token_provider_wins_over_static_token(self):
        seen = []

        async def provider():
            return "fresh"

        async with _account(_balance_server([1], seen), token="stale", token_provider=provider) as account:
            await account.get_balance()
        assert seen[0].headers["Authorization"] == "Bearer fresh"

    @pytest.mark.asyncio
    async def test_no_token_sends_no_auth_header(self):
        seen = []
        async with _account(_balance_server([1], seen)) as account:
            await account.get_balance()
        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_display_name(self):
        def handler(request):
            assert request.url.path == PROFILE_PATH
            return httpx.Response(200, json={"displayName": "Alice", "userId": "user-1"})

        async with _account(handler) as account:
            assert await account.get_display_name() == "Alice"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500, json={"detail": "boom"}),
        httpx.Response(401),
        httpx.Response(200, content=b"not json"),
        httpx.Response(200, json=[1, 2]),
        httpx.Response(200, json={"balance": -5}),
        httpx.Response(200, json={"credits": 5}),
    ])
    async def test_bad_responses_raise_account_error(self, response):
        async with _account(lambda request: response) as account:
            with pytest.raises(AccountError):
                await account.get_balance()

    @pytest.mark.asyncio
    async def test_transport_failure_raises_account_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _account(handler) as account:
            with pytest.raises(AccountError):
                await account.get_balance()


# ===================================================================
# BalanceCache
# ===================================================================


class TestBalanceCache:

    @pytest.mark.asyncio
    async def test_store_and_reload(self, tmp_path):
        path = tmp_path / "cache" / "balance.json"
        cache = BalanceCache(path)
        await cache.store("user-1", 900)
        assert cache.get("user-1") == 900

        reloaded = BalanceCache(path)
        assert reloaded.get("user-1") == 900
        assert reloaded.get("user-2") is None

    def test_missing_file_is_empty(self, tmp_path):
        assert BalanceCache(tmp_path / "nope.json").get("user-1") is None

    def test_corrupt_file_is_empty(self, tmp_path):
        path = tmp_path / "balance.json"
        path.write_text("{not json")
        assert BalanceCache(path).get("user-1") is None

    def test_non_integer_entry_ignored(self, tmp_path):
        path = tmp_path / "balance.json"
        path.write_text(json.dumps({"user-1": {"balance": "lots"}, "user-2": {"balance": True}}))
        cache = BalanceCache(path)
        assert cache.get("user-1") is None
        assert cache.get("user-2") is None

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, tmp_path):
        cache = BalanceCache(tmp_path / "balance.json")
        await cache.store("user-1", 1)
        await cache.store("user-1", 2)
        assert [p.name for p in tmp_path.iterdir()] == ["balance.json"]


# ===================================================================
# BalanceTracker
# ===================================================================


class TestBalanceTracker:

    @pytest.mark.asyncio
    async def test_refresh_stores_and_notifies(self, tmp_path):
        cache = BalanceCache(tmp_path / "balance.json")
        tracker = BalanceTracker(_account(_balance_server([700])), cache, user_id="user-1")
        changes = []
        tracker.on_change(changes.append)

        assert await tracker.refresh() == 700
        assert tracker.known_balance == 700
        assert changes == [700]
        assert BalanceCache(tmp_path / "balance.json").get("user-1") == 700

    @pytest.mark.asyncio
    async def test_refresh_is_throttled_unless_forced(self):
        seen = []
        clock = ManualClock()
        tracker = BalanceTracker(
            _account(_balance_server([10, 20, 30], seen)), min_interval=5, clock=clock
        )
        assert await tracker.refresh() == 10
        clock.now += 1
        assert await tracker.refresh() == 10
        assert len(seen) == 1

        assert await tracker.refresh(force=True) == 20
        clock.now += 6
        assert await tracker.refresh() == 30
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_unchanged_balance_does_not_notify(self):
        tracker = BalanceTracker(_account(_balance_server([5, 5])))
        changes = []
        tracker.on_change(changes.append)
        await tracker.refresh(force=True)
        await tracker.refresh(force=True)
        assert changes == [5]

    @pytest.mark.asyncio
    async def test_cached_value_until_first_fetch(self, tmp_path):
        cache = BalanceCache(tmp_path / "balance.json")
        await cache.store("user-1", 400)
        tracker = BalanceTracker(
            _account(lambda request: httpx.Response(503)), cache, user_id="user-1"
        )
        assert tracker.known_balance == 400
        assert await tracker.refresh() == 400
        assert tracker.balance is None

    @pytest.mark.asyncio
    async def test_unknown_without_cache(self):
        tracker = BalanceTracker(_account(lambda request: httpx.Response(503)))
        assert await tracker.refresh() is None
