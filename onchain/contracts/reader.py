from typing import Any, Pattern, Union
import re

from web3.exceptions import MismatchedABI, Web3ValidationError

from onchain.contracts.connection import RemoteHandle
from onchain.contracts.errors import (
    ContractServiceError,
    IntentionalRemoteError,
    InvalidRequestError,
    TransientFetchError,
)


class ErrorClassifier:
    """Turns raw web3 / transport exceptions into the contract error taxonomy.

    Contracts signal deliberate rejections with a revert reason carrying a
    recognisable prefix (e.g. ``PixelBlossom: token is locked``). Those are
    domain errors and must reach the caller. Everything else is treated as an
    incidental transport failure that may succeed after a reconnect.
    """

    def __init__(self, intentional_pattern: Union[str, Pattern[str]]):
        self._pattern = re.compile(intentional_pattern)

    def is_intentional(self, error: BaseException) -> bool:
        return bool(self._pattern.search(str(error)))

    def classify(self, error: Exception) -> ContractServiceError:
        if isinstance(error, ContractServiceError):
            return error
        if self.is_intentional(error):
            return IntentionalRemoteError(str(error))
        return TransientFetchError(f"{type(error).__name__}: {error}")


class ContractReader:
    """Single best-effort contract calls. Retrying is up to the caller."""

    def __init__(self, classifier: ErrorClassifier):
        self._classifier = classifier

    async def total_supply(self, handle: RemoteHandle) -> Any:
        return await self._call(handle, "totalSupply")

    async def exists(self, handle: RemoteHandle, token_id: int) -> Any:
        return await self._call(handle, "exists", token_id)

    async def state(
        self, handle: RemoteHandle, collection_index: int, token_id: int
    ) -> Any:
        return await self._call(handle, "state", collection_index, token_id)

    async def _call(self, handle: RemoteHandle, function_name: str, *args) -> Any:
        try:
            function = getattr(handle.contract.functions, function_name)
            return await function(*args).call()
        except ContractServiceError:
            raise
        except (MismatchedABI, Web3ValidationError) as e:
            # Arguments rejected by the ABI encoder, nothing was sent to the node
            raise InvalidRequestError(f"Invalid arguments for {function_name}: {e}") from e
        except Exception as e:
            raise self._classifier.classify(e) from e
