"""Connections to web3 nodes and the contract handles bound to them.

A single ``WEB3_HOST`` serves every network the token database deploys to.
Without a host, each network gets its own hosted-provider endpoint built from
the configured API keys (Alchemy, then Infura, then Pocket). WebSocket hosts
hold a long-lived connection which is torn down and rebuilt by ``reconnect()``.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Dict, Optional, Tuple
import asyncio
import base64
import logging

import aiohttp
from web3 import AsyncWeb3, AsyncHTTPProvider, WebSocketProvider
from web3.contract import AsyncContract
from web3.providers.persistent import PersistentConnectionProvider

from api.api_types import (
    ApiKeys,
    AuthorizationConfig,
    InfuraCredentials,
    PocketCredentials,
    TokenDatabase,
    Web3Config,
)
from onchain.contracts.errors import InvalidAuthSchemeError, TransientFetchError

logger = logging.getLogger(__name__)

CONTRACT_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "totalSupply",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "exists",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "collectionIndex", "type": "uint256"},
            {"name": "id", "type": "uint256"},
        ],
        "name": "state",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# network name -> provider specific subdomain
ALCHEMY_NETWORKS: Dict[str, str] = {
    "homestead": "eth-mainnet",
    "mainnet": "eth-mainnet",
    "sepolia": "eth-sepolia",
    "holesky": "eth-holesky",
    "matic": "polygon-mainnet",
    "polygon": "polygon-mainnet",
    "amoy": "polygon-amoy",
    "arbitrum": "arb-mainnet",
    "optimism": "opt-mainnet",
    "base": "base-mainnet",
}
INFURA_NETWORKS: Dict[str, str] = {
    "homestead": "mainnet",
    "mainnet": "mainnet",
    "sepolia": "sepolia",
    "holesky": "holesky",
    "matic": "polygon-mainnet",
    "polygon": "polygon-mainnet",
    "amoy": "polygon-amoy",
    "arbitrum": "arbitrum-mainnet",
    "optimism": "optimism-mainnet",
    "base": "base-mainnet",
}
POCKET_NETWORKS: Dict[str, str] = {
    "homestead": "eth-mainnet",
    "mainnet": "eth-mainnet",
    "matic": "poly-mainnet",
    "polygon": "poly-mainnet",
}


def authorization_header(auth: AuthorizationConfig) -> Optional[str]:
    """Build the Authorization header value for the node host."""
    if auth.type == "Basic":
        if not auth.value:
            return None
        encoded = base64.b64encode(auth.value.encode()).decode()
        return f"Basic {encoded}"
    if auth.type == "Bearer":
        if not auth.value:
            return None
        return f"Bearer {auth.value}"
    raise InvalidAuthSchemeError(
        f"Invalid authorization type: {auth.type}, possible values are Basic, Bearer"
    )


def hosted_provider_endpoint(
    network: str, api_keys: ApiKeys
) -> Optional[Tuple[str, Dict[str, str]]]:
    """Return (url, headers) of a hosted node for the network, if any key covers it."""
    if api_keys.alchemy and network in ALCHEMY_NETWORKS:
        return (
            f"https://{ALCHEMY_NETWORKS[network]}.g.alchemy.com/v2/{api_keys.alchemy}",
            {},
        )

    if api_keys.infura and network in INFURA_NETWORKS:
        infura = api_keys.infura
        if isinstance(infura, InfuraCredentials):
            headers = {}
            if infura.project_secret:
                secret = base64.b64encode(f":{infura.project_secret}".encode())
                headers["Authorization"] = f"Basic {secret.decode()}"
            project_id = infura.project_id
        else:
            headers = {}
            project_id = infura
        return (
            f"https://{INFURA_NETWORKS[network]}.infura.io/v3/{project_id}",
            headers,
        )

    if api_keys.pocket and network in POCKET_NETWORKS:
        pocket = api_keys.pocket
        if isinstance(pocket, PocketCredentials):
            headers = {}
            if pocket.application_secret_key:
                secret = base64.b64encode(f":{pocket.application_secret_key}".encode())
                headers["Authorization"] = f"Basic {secret.decode()}"
            application_id = pocket.application_id
        else:
            headers = {}
            application_id = pocket
        return (
            f"https://{POCKET_NETWORKS[network]}.gateway.pokt.network/v1/lb/{application_id}",
            headers,
        )

    return None


def _is_websocket_url(url: str) -> bool:
    return url.lower().startswith(("ws://", "wss://"))


@dataclass(frozen=True)
class RemoteHandle:
    collection: str
    network: str
    address: str
    contract: AsyncContract


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"


class ConnectionManager:
    """Owns the node connections and the (collection, network) -> handle table."""

    def __init__(self, database: TokenDatabase, config: Web3Config):
        self._database = database
        self._config = config
        # Fails here, at startup, rather than on the first request
        self._auth_header = authorization_header(config.authorization)

        self.state = ConnectionState.DISCONNECTED
        self._connections, self._handles = self._build()

    @property
    def persistent(self) -> bool:
        """True when the transport keeps a socket open that can drop."""
        return bool(self._config.host) and _is_websocket_url(self._config.host)

    @property
    def handles(self) -> Dict[Tuple[str, str], RemoteHandle]:
        return dict(self._handles)

    def get_handle(self, collection: str, network: str) -> Optional[RemoteHandle]:
        return self._handles.get((collection, network))

    def _endpoint(self, network: str) -> Optional[Tuple[str, Dict[str, str]]]:
        if self._config.host:
            headers = {}
            if self._auth_header:
                headers["Authorization"] = self._auth_header
            return self._config.host, headers
        return hosted_provider_endpoint(network, self._config.api_keys)

    def _create_connection(self, url: str, headers: Dict[str, str]) -> AsyncWeb3:
        if _is_websocket_url(url):
            provider = WebSocketProvider(
                url,
                websocket_kwargs={"additional_headers": headers},
                request_timeout=self._config.request_timeout_seconds,
                max_connection_retries=self._config.connection_retries,
            )
        else:
            provider = AsyncHTTPProvider(
                url,
                request_kwargs={
                    "headers": headers,
                    "timeout": aiohttp.ClientTimeout(
                        total=self._config.request_timeout_seconds
                    ),
                },
            )
        return AsyncWeb3(provider)

    def _build(
        self,
    ) -> Tuple[Dict[str, AsyncWeb3], Dict[Tuple[str, str], RemoteHandle]]:
        """Create connections and one handle per declared deployment."""
        connections: Dict[str, AsyncWeb3] = {}
        handles: Dict[Tuple[str, str], RemoteHandle] = {}

        for collection_name, collection in self._database.items():
            if collection.contract is None:
                continue

            for network, deployment in collection.contract.deployments.items():
                endpoint = self._endpoint(network)
                if endpoint is None:
                    logger.warning(
                        f"No node endpoint for network {network}, "
                        f"contract of collection {collection_name} will not be queried"
                    )
                    continue

                url, headers = endpoint
                if url not in connections:
                    connections[url] = self._create_connection(url, headers)
                w3 = connections[url]

                address = AsyncWeb3.to_checksum_address(deployment.address)
                handles[(collection_name, network)] = RemoteHandle(
                    collection=collection_name,
                    network=network,
                    address=address,
                    contract=w3.eth.contract(address=address, abi=CONTRACT_ABI),
                )

        return connections, handles

    async def wait_until_ready(self) -> None:
        """Suspend until every connection answers, or raise TransientFetchError."""
        if self.state == ConnectionState.READY:
            return

        self.state = ConnectionState.CONNECTING
        for url, w3 in list(self._connections.items()):
            await self._wait_for_connection(url, w3)

        self.state = ConnectionState.READY
        logger.info(f"Connected to {len(self._connections)} web3 node(s)")

    async def _wait_for_connection(self, url: str, w3: AsyncWeb3) -> None:
        if isinstance(w3.provider, PersistentConnectionProvider):
            try:
                await w3.provider.connect()
            except Exception as e:
                self.state = ConnectionState.DISCONNECTED
                raise TransientFetchError(f"Could not connect to web3 node: {e}") from e

        for attempt in range(1, self._config.connection_retries + 1):
            if await w3.is_connected():
                return
            logger.warning(
                f"Web3 node not ready (attempt {attempt}/{self._config.connection_retries})"
            )
            await asyncio.sleep(self._config.connection_retry_delay_seconds)

        self.state = ConnectionState.DISCONNECTED
        raise TransientFetchError(
            f"Web3 node did not become ready after {self._config.connection_retries} attempts"
        )

    async def reconnect(self) -> None:
        """Tear down all connections, rebuild every handle, and wait until ready."""
        logger.warning("Reconnecting to web3 node(s)")
        self.state = ConnectionState.CONNECTING

        old_connections = self._connections
        await self._disconnect(old_connections)

        # Swap the whole table at once, readers never see a partial rebuild
        self._connections, self._handles = self._build()
        await self.wait_until_ready()

    async def close(self) -> None:
        await self._disconnect(self._connections)
        self.state = ConnectionState.DISCONNECTED

    async def _disconnect(self, connections: Dict[str, AsyncWeb3]) -> None:
        for w3 in connections.values():
            try:
                await w3.provider.disconnect()
            except Exception as e:
                logger.warning(f"Error closing web3 connection: {e}")
