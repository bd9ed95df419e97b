import pytest
from unittest.mock import AsyncMock, Mock

from onchain.contracts.connection import ConnectionManager
from onchain.contracts.errors import (
    IntentionalRemoteError,
    InvalidRemoteResponseError,
    NotConfiguredError,
    TransientFetchError,
)
from onchain.contracts.state_cache import (
    CacheEntry,
    ContractStateCache,
    FailurePolicy,
    StateStore,
    parse_bool,
    parse_uint,
)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def handle():
    return Mock(name="handle")


@pytest.fixture
def connections(handle):
    """ConnectionManager double with a socket transport and one bound handle."""
    mock_connections = Mock(spec=ConnectionManager)
    mock_connections.persistent = True
    mock_connections.get_handle.return_value = handle
    return mock_connections


@pytest.fixture
def read():
    return AsyncMock()


def make_cache(connections, read, clock, policy=FailurePolicy.FALLBACK, ttl=10, default=0):
    return ContractStateCache(
        name="state",
        connections=connections,
        read=read,
        parse=parse_uint,
        ttl_seconds=ttl,
        policy=policy,
        default=default,
        clock=clock,
    )


class TestParsers:
    def test_parse_uint(self):
        assert parse_uint(3) == 3
        assert parse_uint(0) == 0
        assert parse_uint("10") == 10
        assert parse_uint(2**256 - 1) == 2**256 - 1

    def test_parse_uint_rejects_garbage(self):
        for raw in ["non-number-string", "", None, 1.5, True, -1, {"value": 1}]:
            with pytest.raises(InvalidRemoteResponseError):
                parse_uint(raw)

    def test_parse_bool(self):
        assert parse_bool(True) is True
        assert parse_bool(False) is False
        assert parse_bool(1) is True
        assert parse_bool(0) is False
        assert parse_bool("true") is True

    def test_parse_bool_rejects_garbage(self):
        for raw in [2, "yes", None, 0.0]:
            with pytest.raises(InvalidRemoteResponseError):
                parse_bool(raw)


class TestStateStore:
    def test_put_and_get(self):
        store = StateStore()
        entry = store.put(("collection", "network", 1), 4, 10.0)

        assert entry == CacheEntry(value=4, observed_at=10.0)
        assert store.get(("collection", "network", 1)) == entry
        assert ("collection", "network", 1) in store
        assert len(store) == 1

    def test_observed_at_never_decreases(self):
        store = StateStore()
        store.put(("collection", "network"), 1, 10.0)
        entry = store.put(("collection", "network"), 2, 5.0)

        assert entry.value == 2
        assert entry.observed_at == 10.0

    def test_entries_are_kept_for_the_process_lifetime(self):
        store = StateStore()
        store.put(("collection", "network", 0), 1, 0.0)
        for token_id in range(1, 150_001):
            store.put(("collection", "network", token_id), token_id, 0.0)

        assert len(store) == 150_001
        assert store.get(("collection", "network", 0)) == CacheEntry(1, 0.0)


class TestContractStateCache:
    @pytest.mark.asyncio
    async def test_second_call_within_ttl_is_served_from_cache(
        self, connections, read, clock, handle
    ):
        cache = make_cache(connections, read, clock)
        read.return_value = 3

        assert await cache.get("collection0", "network0", 1) == 3
        clock.now = 9.9
        assert await cache.get("collection0", "network0", 1) == 3

        read.assert_awaited_once_with(handle, 1)
        connections.get_handle.assert_called_once_with("collection0", "network0")

    @pytest.mark.asyncio
    async def test_reads_again_after_ttl(self, connections, read, clock):
        cache = make_cache(connections, read, clock)
        read.side_effect = [3, 4]

        assert await cache.get("collection0", "network0", 1) == 3
        clock.now = 10.0
        assert await cache.get("collection0", "network0", 1) == 4

        assert read.await_count == 2
        assert cache.peek("collection0", "network0", 1) == CacheEntry(4, 10.0)

    @pytest.mark.asyncio
    async def test_one_second_ttl_scenario(self, connections, read, clock):
        cache = make_cache(connections, read, clock, ttl=1)
        read.side_effect = [3, 4]

        assert await cache.get("collection0", "network0") == 3

        clock.now = 0.5
        assert await cache.get("collection0", "network0") == 3
        assert read.await_count == 1

        clock.now = 1.1
        assert await cache.get("collection0", "network0") == 4
        assert read.await_count == 2

    @pytest.mark.asyncio
    async def test_keys_are_cached_independently(self, connections, read, clock):
        cache = make_cache(connections, read, clock)
        read.side_effect = [1, 2]

        assert await cache.get("collection0", "network0", 1) == 1
        assert await cache.get("collection0", "network0", 2) == 2
        assert read.await_count == 2

    @pytest.mark.asyncio
    async def test_zero_ttl_always_reads(self, connections, read, clock):
        cache = make_cache(connections, read, clock, ttl=0)
        read.side_effect = [1, 2]

        assert await cache.get("collection0", "network0") == 1
        assert await cache.get("collection0", "network0") == 2

    @pytest.mark.asyncio
    async def test_retries_once_after_reconnect(self, connections, read, clock):
        cache = make_cache(connections, read, clock)
        clock.now = 5.0
        read.side_effect = [TransientFetchError("socket closed"), 7]

        assert await cache.get("collection0", "network0", 1) == 7

        connections.reconnect.assert_awaited_once()
        assert read.await_count == 2
        assert cache.peek("collection0", "network0", 1) == CacheEntry(7, 5.0)

    @pytest.mark.asyncio
    async def test_retry_uses_the_rebuilt_handle(self, connections, read, clock):
        old_handle, new_handle = Mock(name="old"), Mock(name="new")
        connections.get_handle.side_effect = [old_handle, new_handle]
        cache = make_cache(connections, read, clock)
        read.side_effect = [TransientFetchError("socket closed"), 7]

        await cache.get("collection0", "network0", 1)

        assert read.await_args_list[0].args == (old_handle, 1)
        assert read.await_args_list[1].args == (new_handle, 1)

    @pytest.mark.asyncio
    async def test_http_transport_retries_without_reconnect(
        self, connections, read, clock
    ):
        connections.persistent = False
        cache = make_cache(connections, read, clock)
        read.side_effect = [TransientFetchError("timeout"), 7]

        assert await cache.get("collection0", "network0", 1) == 7

        connections.reconnect.assert_not_awaited()
        assert read.await_count == 2

    @pytest.mark.asyncio
    async def test_fallback_serves_previous_value_and_keeps_timestamp(
        self, connections, read, clock
    ):
        cache = make_cache(connections, read, clock)
        read.side_effect = [
            3,
            TransientFetchError("socket closed"),
            TransientFetchError("socket closed"),
            5,
        ]

        assert await cache.get("collection0", "network0", 1) == 3

        clock.now = 20.0
        assert await cache.get("collection0", "network0", 1) == 3
        assert cache.peek("collection0", "network0", 1) == CacheEntry(3, 0.0)
        assert read.await_count == 3

        # Value was never refreshed, so the next call goes to the contract
        clock.now = 20.1
        assert await cache.get("collection0", "network0", 1) == 5
        assert read.await_count == 4
        assert cache.peek("collection0", "network0", 1) == CacheEntry(5, 20.1)

    @pytest.mark.asyncio
    async def test_fallback_without_previous_value_serves_default(
        self, connections, read, clock
    ):
        cache = make_cache(connections, read, clock)
        read.side_effect = [
            TransientFetchError("socket closed"),
            TransientFetchError("socket closed"),
            8,
        ]

        assert await cache.get("collection0", "network0", 1) == 0
        assert cache.peek("collection0", "network0", 1) is None

        assert await cache.get("collection0", "network0", 1) == 8
        assert read.await_count == 3

    @pytest.mark.asyncio
    async def test_fallback_serves_oldest_value_in_a_large_store(
        self, connections, read, clock
    ):
        store = StateStore()
        store.put(("collection0", "network0", 0), 3, 0.0)
        for token_id in range(1, 150_001):
            store.put(("collection0", "network0", token_id), 1, 0.0)
        cache = ContractStateCache(
            name="state",
            connections=connections,
            read=read,
            parse=parse_uint,
            ttl_seconds=10,
            policy=FailurePolicy.FALLBACK,
            default=0,
            clock=clock,
            store=store,
        )
        read.side_effect = TransientFetchError("socket closed")

        clock.now = 20.0
        assert await cache.get("collection0", "network0", 0) == 3
        assert read.await_count == 2
        assert cache.peek("collection0", "network0", 0) == CacheEntry(3, 0.0)

    @pytest.mark.asyncio
    async def test_existence_fallback_default_is_false(self, connections, read, clock):
        cache = ContractStateCache(
            name="exists",
            connections=connections,
            read=read,
            parse=parse_bool,
            ttl_seconds=10,
            policy=FailurePolicy.FALLBACK,
            default=False,
            clock=clock,
        )
        read.side_effect = TransientFetchError("socket closed")

        assert await cache.get("collection0", "network0", 1) is False
        assert read.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_reconnect_falls_back(self, connections, read, clock):
        cache = make_cache(connections, read, clock)
        read.side_effect = TransientFetchError("socket closed")
        connections.reconnect.side_effect = TransientFetchError("node down")

        assert await cache.get("collection0", "network0", 1) == 0
        assert read.await_count == 1

    @pytest.mark.asyncio
    async def test_propagate_policy_raises_after_retry(self, connections, read, clock):
        cache = make_cache(connections, read, clock, policy=FailurePolicy.PROPAGATE)
        read.side_effect = [3, TransientFetchError("first"), TransientFetchError("second")]

        await cache.get("collection0", "network0")
        clock.now = 15.0

        with pytest.raises(TransientFetchError, match="second"):
            await cache.get("collection0", "network0")

        connections.reconnect.assert_awaited_once()
        assert cache.peek("collection0", "network0") == CacheEntry(3, 0.0)
        assert cache.last_known("collection0", "network0") == 3

    @pytest.mark.asyncio
    async def test_invalid_response_is_not_cached(self, connections, read, clock):
        cache = make_cache(connections, read, clock)
        read.side_effect = [3, "non-number-string"]

        await cache.get("collection0", "network0")
        clock.now = 11.0

        with pytest.raises(InvalidRemoteResponseError):
            await cache.get("collection0", "network0")

        assert cache.peek("collection0", "network0") == CacheEntry(3, 0.0)
        connections.reconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_handle_is_not_configured(self, connections, read, clock):
        connections.get_handle.return_value = None
        cache = make_cache(connections, read, clock)

        with pytest.raises(NotConfiguredError) as exc_info:
            await cache.get("collection0", "network0", 1)

        assert not isinstance(exc_info.value, TransientFetchError)
        read.assert_not_awaited()
        connections.reconnect.assert_not_awaited()
        assert cache.peek("collection0", "network0", 1) is None

    @pytest.mark.asyncio
    async def test_intentional_error_is_never_retried_or_swallowed(
        self, connections, read, clock
    ):
        cache = make_cache(connections, read, clock)
        read.side_effect = [3, IntentionalRemoteError("PixelBlossom: locked")]

        await cache.get("collection0", "network0", 1)
        clock.now = 11.0

        with pytest.raises(IntentionalRemoteError):
            await cache.get("collection0", "network0", 1)

        assert read.await_count == 2
        connections.reconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_intentional_error_on_retry_propagates(self, connections, read, clock):
        cache = make_cache(connections, read, clock)
        read.side_effect = [
            TransientFetchError("socket closed"),
            IntentionalRemoteError("PixelBlossom: locked"),
        ]

        with pytest.raises(IntentionalRemoteError):
            await cache.get("collection0", "network0", 1)
