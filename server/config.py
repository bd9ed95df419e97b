import os
import logging
from typing import Optional

from api.api_types import (
    ApiConfig,
    ApiKeys,
    AuthorizationConfig,
    InfuraCredentials,
    PocketCredentials,
    Web3Config,
)

TOKEN_DATABASE_PATH: str = os.getenv("TOKEN_DATABASE_PATH", "database.json")

# Node host that web3 connects to (http(s):// or ws(s)://)
WEB3_HOST: Optional[str] = os.getenv("WEB3_HOST")
# Possible values - Basic, Bearer. In case of Basic, the value is base64 encoded
WEB3_AUTH_TYPE: str = os.getenv("WEB3_AUTH_TYPE", "Basic")
WEB3_AUTH_VALUE: Optional[str] = os.getenv("WEB3_AUTH_VALUE")

# The contract is queried at most once every n seconds per key. Useful with
# rate limited 3rd party node providers, such as Infura
CACHE_TTL_SECONDS = float(
    os.getenv("CACHE_TTL_SECONDS", os.getenv("TOTAL_SUPPLY_CACHE_TTL", "300"))
)
STATE_CACHE_TTL_SECONDS: Optional[str] = os.getenv("STATE_CACHE_TTL_SECONDS")

INTENTIONAL_ERROR_PATTERN: str = os.getenv("INTENTIONAL_ERROR_PATTERN", "PixelBlossom:")

WEB3_CONNECTION_RETRIES = int(os.getenv("WEB3_CONNECTION_RETRIES", "5"))
WEB3_CONNECTION_RETRY_DELAY = float(os.getenv("WEB3_CONNECTION_RETRY_DELAY", "1.0"))
WEB3_REQUEST_TIMEOUT = float(os.getenv("WEB3_REQUEST_TIMEOUT", "30"))

ETHERSCAN_API_KEY = os.getenv("ETHERSCAN_API_KEY")
INFURA_PROJECT_ID = os.getenv("INFURA_PROJECT_ID")
INFURA_PROJECT_SECRET = os.getenv("INFURA_PROJECT_SECRET")
ALCHEMY_API_KEY = os.getenv("ALCHEMY_API_KEY")
POCKET_APPLICATION_ID = os.getenv("POCKET_APPLICATION_ID")
POCKET_APPLICATION_SECRET_KEY = os.getenv("POCKET_APPLICATION_SECRET_KEY")


def _api_keys() -> ApiKeys:
    infura = None
    if INFURA_PROJECT_ID:
        infura = InfuraCredentials(
            project_id=INFURA_PROJECT_ID, project_secret=INFURA_PROJECT_SECRET
        )

    pocket = None
    if POCKET_APPLICATION_ID:
        pocket = PocketCredentials(
            application_id=POCKET_APPLICATION_ID,
            application_secret_key=POCKET_APPLICATION_SECRET_KEY,
        )

    return ApiKeys(
        etherscan=ETHERSCAN_API_KEY,
        infura=infura,
        alchemy=ALCHEMY_API_KEY,
        pocket=pocket,
    )


def _web3_enabled(api_keys: ApiKeys) -> bool:
    enabled = os.getenv("WEB3_ENABLED")
    if enabled is not None:
        return enabled.lower() == "true"
    return bool(WEB3_HOST or api_keys.infura or api_keys.alchemy or api_keys.pocket)


def load_api_config() -> ApiConfig:
    """Build the API configuration from the environment."""
    api_keys = _api_keys()

    web3 = None
    if _web3_enabled(api_keys):
        web3 = Web3Config(
            host=WEB3_HOST,
            authorization=AuthorizationConfig(type=WEB3_AUTH_TYPE, value=WEB3_AUTH_VALUE),
            api_keys=api_keys,
            cache_ttl_seconds=CACHE_TTL_SECONDS,
            state_cache_ttl_seconds=(
                float(STATE_CACHE_TTL_SECONDS) if STATE_CACHE_TTL_SECONDS else None
            ),
            intentional_error_pattern=INTENTIONAL_ERROR_PATTERN,
            connection_retries=WEB3_CONNECTION_RETRIES,
            connection_retry_delay_seconds=WEB3_CONNECTION_RETRY_DELAY,
            request_timeout_seconds=WEB3_REQUEST_TIMEOUT,
        )

    logging.info(f"Web3 enabled: {web3 is not None}")
    return ApiConfig(token_database_path=TOKEN_DATABASE_PATH, web3=web3)
