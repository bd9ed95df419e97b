from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional, Union
from enum import StrEnum


# Contract deployment of a collection on one network
class Deployment(BaseModel):
    address: str


class CollectionContract(BaseModel):
    deployments: Dict[str, Deployment] = {}  # network name -> deployment


class GateType(StrEnum):
    TOTAL_SUPPLY = "totalSupply"
    EXISTS = "exists"
    STATE = "state"


# A token is either one metadata object, or one object per on-chain state value
TokenMetadataVariants = Union[Dict[str, Any], List[Dict[str, Any]]]


class TokenCollection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    contract: Optional[CollectionContract] = None
    collection_index: int = Field(default=0, alias="collectionIndex")
    gate: GateType = GateType.TOTAL_SUPPLY
    reveal_time: Optional[int] = Field(default=None, alias="revealTime")  # epoch ms
    reserved_tokens: List[int] = Field(default_factory=list, alias="reservedTokens")
    tokens: Dict[str, TokenMetadataVariants] = {}


TokenDatabase = Dict[str, TokenCollection]


class InfuraCredentials(BaseModel):
    project_id: str
    project_secret: Optional[str] = None


class PocketCredentials(BaseModel):
    application_id: str
    application_secret_key: Optional[str] = None


# Credentials for hosted node providers, used when no explicit host is set
class ApiKeys(BaseModel):
    etherscan: Optional[str] = None
    infura: Optional[Union[str, InfuraCredentials]] = None
    alchemy: Optional[str] = None
    pocket: Optional[Union[str, PocketCredentials]] = None


class AuthorizationConfig(BaseModel):
    type: str = "Basic"  # Basic or Bearer
    value: Optional[str] = None


class Web3Config(BaseModel):
    host: Optional[str] = None
    authorization: AuthorizationConfig = AuthorizationConfig()
    api_keys: ApiKeys = ApiKeys()

    # Contract is queried at most once per key every n seconds
    cache_ttl_seconds: float = Field(default=300, ge=0)
    state_cache_ttl_seconds: Optional[float] = Field(default=None, ge=0)

    # Revert reasons matching this are domain errors, never retried
    intentional_error_pattern: str = "PixelBlossom:"

    connection_retries: int = Field(default=5, ge=1)
    connection_retry_delay_seconds: float = Field(default=1.0, ge=0)
    request_timeout_seconds: float = Field(default=30, gt=0)


class ApiConfig(BaseModel):
    token_database_path: str = "database.json"
    web3: Optional[Web3Config] = None
