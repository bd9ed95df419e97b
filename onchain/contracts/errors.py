class ContractServiceError(Exception):
    """Base class for errors raised while reading contract state."""


class NotConfiguredError(ContractServiceError):
    """No contract is bound for the requested collection and network."""

    def __init__(self, collection: str, network: str):
        super().__init__(
            f"Collection {collection} has no contract configured on network {network}"
        )
        self.collection = collection
        self.network = network


class InvalidAuthSchemeError(ContractServiceError):
    """The configured authorization type is neither Basic nor Bearer."""


class TransientFetchError(ContractServiceError):
    """Network or transport failure while reading from the node."""


class InvalidRemoteResponseError(ContractServiceError):
    """The contract returned a value of the wrong shape."""


class IntentionalRemoteError(ContractServiceError):
    """The contract rejected the call on purpose (a recognised revert reason)."""


class InvalidRequestError(ContractServiceError):
    """The call arguments were rejected locally, before reaching the node."""
