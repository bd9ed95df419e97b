from typing import Callable
import logging
import time

from api.api_types import TokenDatabase, Web3Config
from onchain.contracts.connection import ConnectionManager, ConnectionState, RemoteHandle
from onchain.contracts.reader import ContractReader, ErrorClassifier
from onchain.contracts.state_cache import (
    ContractStateCache,
    FailurePolicy,
    parse_bool,
    parse_uint,
)


class ContractService:
    """On-chain reads for the collections of a token database, behind TTL caches.

    Total supply failures propagate, the metadata resolver decides what to
    serve instead. Existence and state failures fall back to the last stored
    value, or False / 0 when nothing was ever read.
    """

    def __init__(
        self,
        database: TokenDatabase,
        config: Web3Config,
        clock: Callable[[], float] = time.time,
    ):
        self._database = database
        self._config = config
        self.connections = ConnectionManager(database, config)
        self.reader = ContractReader(ErrorClassifier(config.intentional_error_pattern))

        state_ttl = config.state_cache_ttl_seconds
        if state_ttl is None:
            state_ttl = config.cache_ttl_seconds

        self.total_supply_cache: ContractStateCache[int] = ContractStateCache(
            name="total_supply",
            connections=self.connections,
            read=self.reader.total_supply,
            parse=parse_uint,
            ttl_seconds=config.cache_ttl_seconds,
            policy=FailurePolicy.PROPAGATE,
            default=0,
            clock=clock,
        )
        self.exists_cache: ContractStateCache[bool] = ContractStateCache(
            name="exists",
            connections=self.connections,
            read=self.reader.exists,
            parse=parse_bool,
            ttl_seconds=config.cache_ttl_seconds,
            policy=FailurePolicy.FALLBACK,
            default=False,
            clock=clock,
        )
        self.state_cache: ContractStateCache[int] = ContractStateCache(
            name="state",
            connections=self.connections,
            read=self._read_state,
            parse=parse_uint,
            ttl_seconds=state_ttl,
            policy=FailurePolicy.FALLBACK,
            default=0,
            clock=clock,
        )

        logging.info(
            f"Contract service bound to {len(self.connections.handles)} deployment(s)"
        )

    @property
    def connection_state(self) -> ConnectionState:
        return self.connections.state

    async def get_total_supply(self, collection: str, network: str) -> int:
        return await self.total_supply_cache.get(collection, network)

    def last_known_total_supply(self, collection: str, network: str) -> int:
        return self.total_supply_cache.last_known(collection, network)

    async def exists(self, collection: str, network: str, token_id: int) -> bool:
        return await self.exists_cache.get(collection, network, token_id)

    async def state(self, collection: str, network: str, token_id: int) -> int:
        return await self.state_cache.get(collection, network, token_id)

    async def wait_until_ready(self) -> None:
        await self.connections.wait_until_ready()

    async def reconnect(self) -> None:
        await self.connections.reconnect()

    async def close(self) -> None:
        await self.connections.close()

    async def _read_state(self, handle: RemoteHandle, token_id: int):
        collection_index = self._database[handle.collection].collection_index
        return await self.reader.state(handle, collection_index, token_id)
