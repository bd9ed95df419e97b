"""Time-bounded cache in front of contract reads.

Each cache kind (total supply, existence, state) is a ``ContractStateCache``
with its own reader, parser and failure policy. A lookup serves the stored
value while it is younger than the TTL, otherwise it reads the contract. A
transient failure gets exactly one retry, after a reconnect when the transport
holds a socket. When the retry fails too, ``PROPAGATE`` caches re-raise and
``FALLBACK`` caches return the last stored value (or their default) without
touching its timestamp, so the next lookup goes to the contract again.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, Tuple, TypeVar
import logging
import math
import time

from cachetools import Cache
from datadog import statsd

from onchain.contracts.connection import ConnectionManager, RemoteHandle
from onchain.contracts.errors import (
    InvalidRemoteResponseError,
    NotConfiguredError,
    TransientFetchError,
)

V = TypeVar("V", int, bool)

CacheKey = Tuple[Hashable, ...]


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: V
    observed_at: float


class FailurePolicy(StrEnum):
    PROPAGATE = "propagate"
    FALLBACK = "fallback"


def parse_uint(raw: Any) -> int:
    """Parse a uint256 contract result. Never coerces garbage to 0."""
    if isinstance(raw, bool):
        raise InvalidRemoteResponseError(f"Expected a number, got boolean {raw}")
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str) and raw.strip().isdigit():
        value = int(raw.strip())
    else:
        raise InvalidRemoteResponseError(f"Expected a number, got {raw!r}")

    if value < 0:
        raise InvalidRemoteResponseError(f"Expected an unsigned number, got {value}")
    return value


def parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
        return raw.strip().lower() == "true"
    raise InvalidRemoteResponseError(f"Expected a boolean, got {raw!r}")


class StateStore:
    """Owned key -> CacheEntry map. Entries are only ever overwritten.

    Unbounded: a key stays for the lifetime of the process, so a fallback can
    always serve the last value read for it.
    """

    def __init__(self):
        self._entries: Cache = Cache(maxsize=math.inf)

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def put(self, key: CacheKey, value: Any, observed_at: float) -> CacheEntry:
        previous = self._entries.get(key)
        if previous is not None:
            # observed_at never moves backwards for a key
            observed_at = max(observed_at, previous.observed_at)
        entry = CacheEntry(value=value, observed_at=observed_at)
        self._entries[key] = entry
        return entry

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


ReadFunction = Callable[..., Awaitable[Any]]


class ContractStateCache(Generic[V]):
    def __init__(
        self,
        name: str,
        connections: ConnectionManager,
        read: ReadFunction,
        parse: Callable[[Any], V],
        ttl_seconds: float,
        policy: FailurePolicy,
        default: V,
        clock: Callable[[], float] = time.time,
        store: Optional[StateStore] = None,
    ):
        """
        Args:
            name: Cache kind, used in logs and metric tags
            connections: Resolves handles, and reconnects after a failure
            read: ``read(handle, *args)`` performing one contract call
            parse: Validates the raw result, raising InvalidRemoteResponseError
            ttl_seconds: Freshness window of a stored value
            policy: What to do when the retry fails as well
            default: Value served by FALLBACK caches with nothing stored
        """
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.policy = policy
        self.default = default
        self._connections = connections
        self._read_function = read
        self._parse = parse
        self._clock = clock
        self._store = store if store is not None else StateStore()
        self._tags = [f"cache:{name}"]

    async def get(self, collection: str, network: str, *args: Hashable) -> V:
        key: CacheKey = (collection, network, *args)
        now = self._clock()

        entry = self._store.get(key)
        if entry is not None and now - entry.observed_at < self.ttl_seconds:
            statsd.increment("contract_cache.hit", tags=self._tags)
            return entry.value

        statsd.increment("contract_cache.miss", tags=self._tags)
        try:
            raw = await self._read(collection, network, *args)
        except TransientFetchError as error:
            logging.warning(f"Failed to read {self.name} for {key}: {error}, retrying")
            try:
                if self._connections.persistent:
                    statsd.increment("contract_cache.reconnect", tags=self._tags)
                    await self._connections.reconnect()
                raw = await self._read(collection, network, *args)
            except TransientFetchError as retry_error:
                return self._on_retry_failure(key, retry_error)

        value = self._parse(raw)
        return self._store.put(key, value, now).value

    def peek(self, collection: str, network: str, *args: Hashable) -> Optional[CacheEntry]:
        """Last stored entry for the key, regardless of its age."""
        return self._store.get((collection, network, *args))

    def last_known(self, collection: str, network: str, *args: Hashable) -> V:
        entry = self.peek(collection, network, *args)
        return entry.value if entry is not None else self.default

    async def _read(self, collection: str, network: str, *args: Hashable) -> Any:
        handle: Optional[RemoteHandle] = self._connections.get_handle(
            collection, network
        )
        if handle is None:
            raise NotConfiguredError(collection, network)
        return await self._read_function(handle, *args)

    def _on_retry_failure(self, key: CacheKey, error: TransientFetchError) -> V:
        statsd.increment("contract_cache.error", tags=self._tags)

        if self.policy == FailurePolicy.PROPAGATE:
            logging.error(f"Failed to read {self.name} for {key} after retry: {error}")
            raise error

        entry = self._store.get(key)
        statsd.increment("contract_cache.fallback", tags=self._tags)
        if entry is None:
            logging.warning(
                f"Failed to read {self.name} for {key} after retry: {error}, "
                f"serving default {self.default!r}"
            )
            return self.default

        logging.warning(
            f"Failed to read {self.name} for {key} after retry: {error}, "
            f"serving value from {entry.observed_at}"
        )
        return entry.value
