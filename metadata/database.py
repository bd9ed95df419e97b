import json
import logging

from pydantic import TypeAdapter

from api.api_types import TokenDatabase

_database_adapter = TypeAdapter(TokenDatabase)


def parse_token_database(data: dict) -> TokenDatabase:
    return _database_adapter.validate_python(data)


def load_token_database(path: str) -> TokenDatabase:
    """Load and validate the token database JSON file."""
    with open(path) as f:
        database = parse_token_database(json.load(f))

    deployments = sum(
        len(collection.contract.deployments)
        for collection in database.values()
        if collection.contract is not None
    )
    logging.info(
        f"Loaded {len(database)} collection(s) with {deployments} deployment(s) from {path}"
    )
    return database
