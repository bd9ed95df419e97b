from typing import Any, Callable, Dict, Optional
import logging
import time

from api.api_types import GateType, TokenCollection, TokenDatabase, TokenMetadataVariants
from onchain.contracts.errors import TransientFetchError
from onchain.contracts.service import ContractService

PLACEHOLDER_TOKEN = "placeholder"


class MetadataNotFoundError(Exception):
    """Collection, deployment or token metadata does not exist."""


def ensure_collection_exists(database: TokenDatabase, collection_name: str) -> TokenCollection:
    if collection_name not in database:
        raise MetadataNotFoundError(f"No such collection: {collection_name}")
    return database[collection_name]


def ensure_deployment_network(
    collection_name: str, collection: TokenCollection, network: str
) -> None:
    if collection.contract is None or network not in collection.contract.deployments:
        raise MetadataNotFoundError(
            f"Collection {collection_name} is not deployed to network {network}"
        )


def ensure_token_exists(
    collection_name: str, collection: TokenCollection, token_id: Any
) -> TokenMetadataVariants:
    variants = collection.tokens.get(str(token_id))
    if not variants:
        raise MetadataNotFoundError(
            f"No token by tokenId {token_id} in collection {collection_name}"
        )
    return variants


def is_collection_revealed(collection: TokenCollection, now_ms: float) -> bool:
    return collection.reveal_time is None or collection.reveal_time <= now_ms


def is_token_reserved(collection: TokenCollection, token_id: int) -> bool:
    return token_id in collection.reserved_tokens


class MetadataResolver:
    def __init__(
        self,
        database: TokenDatabase,
        contract_service: Optional[ContractService] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._database = database
        self._contract_service = contract_service
        self._clock = clock

    @property
    def web3_enabled(self) -> bool:
        return self._contract_service is not None

    def resolve_static(self, collection_name: str, token_id: int) -> Dict[str, Any]:
        """Metadata gated only by reveal time and reserved tokens."""
        collection = ensure_collection_exists(self._database, collection_name)

        if self._is_visible(collection, token_id):
            return self._token(collection_name, collection, token_id)
        return self._placeholder(collection_name, collection)

    async def resolve(
        self, collection_name: str, network: str, token_id: int
    ) -> Dict[str, Any]:
        """Metadata gated by the collection's on-chain check on the given network."""
        collection = ensure_collection_exists(self._database, collection_name)
        ensure_deployment_network(collection_name, collection, network)

        if self._contract_service is None:
            raise MetadataNotFoundError("On-chain lookups are not enabled")

        if not self._is_visible(collection, token_id):
            return self._placeholder(collection_name, collection)

        if collection.gate == GateType.STATE:
            variants = ensure_token_exists(collection_name, collection, token_id)
            state = await self._contract_service.state(collection_name, network, token_id)
            return self._token_for_state(collection_name, token_id, variants, state)

        if collection.gate == GateType.EXISTS:
            exists = await self._contract_service.exists(collection_name, network, token_id)
            if exists:
                return self._token(collection_name, collection, token_id)
            return self._placeholder(collection_name, collection)

        total_supply = await self._total_supply(collection_name, network)
        if token_id < total_supply:
            return self._token(collection_name, collection, token_id)
        return self._placeholder(collection_name, collection)

    async def _total_supply(self, collection_name: str, network: str) -> int:
        try:
            return await self._contract_service.get_total_supply(collection_name, network)
        except TransientFetchError as e:
            total_supply = self._contract_service.last_known_total_supply(
                collection_name, network
            )
            logging.error(
                f"Error getting total supply of {collection_name} on {network}: {e}, "
                f"using last known value {total_supply}"
            )
            return total_supply

    def _is_visible(self, collection: TokenCollection, token_id: int) -> bool:
        return is_collection_revealed(
            collection, self._clock() * 1000
        ) and not is_token_reserved(collection, token_id)

    def _token(
        self, collection_name: str, collection: TokenCollection, token_id: Any
    ) -> Dict[str, Any]:
        variants = ensure_token_exists(collection_name, collection, token_id)
        if isinstance(variants, list):
            return variants[0]
        return variants

    def _placeholder(self, collection_name: str, collection: TokenCollection) -> Dict[str, Any]:
        return self._token(collection_name, collection, PLACEHOLDER_TOKEN)

    def _token_for_state(
        self, collection_name: str, token_id: int, variants: Any, state: int
    ) -> Dict[str, Any]:
        if not isinstance(variants, list):
            return variants
        if state >= len(variants):
            raise MetadataNotFoundError(
                f"No metadata for state {state} of token {token_id} in collection {collection_name}"
            )
        return variants[state]
