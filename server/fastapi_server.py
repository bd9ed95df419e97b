from typing import Optional
import os
import traceback
import logging

from fastapi import FastAPI, Path, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from datadog import initialize, statsd

from api.api_types import ApiConfig, TokenDatabase
from metadata.database import load_token_database
from metadata.resolver import MetadataNotFoundError, MetadataResolver
from onchain.contracts.errors import (
    IntentionalRemoteError,
    InvalidRemoteResponseError,
    InvalidRequestError,
    NotConfiguredError,
    TransientFetchError,
)
from onchain.contracts.service import ContractService
from server.config import load_api_config

# Initialize Datadog
initialize(
    api_key=os.environ.get("DD_API_KEY"),
    app_key=os.environ.get("DD_APP_KEY"),
    host_name=os.environ.get("DD_HOSTNAME", "localhost"),
)


def error_response(status: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"error": {"status": status, "message": message}},
    )


def create_fastapi_app(
    database: Optional[TokenDatabase] = None,
    config: Optional[ApiConfig] = None,
    contract_service: Optional[ContractService] = None,
) -> FastAPI:
    """Create and configure the FastAPI application with routes."""
    if config is None:
        config = load_api_config()
    if database is None:
        database = load_token_database(config.token_database_path)

    # Raises InvalidAuthSchemeError on a bad authorization type, before serving anything
    if contract_service is None and config.web3 is not None:
        contract_service = ContractService(database, config.web3)

    resolver = MetadataResolver(database, contract_service)

    app = FastAPI()

    # Metadata is read by marketplaces and wallets from any origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    # Store services in app state for access in routes
    app.state.database = database
    app.state.contract_service = contract_service
    app.state.resolver = resolver

    @app.on_event("startup")
    async def startup_event():
        if contract_service is not None:
            await contract_service.wait_until_ready()

    @app.on_event("shutdown")
    async def shutdown_event():
        if contract_service is not None:
            await contract_service.close()

    # Exception handlers
    @app.exception_handler(MetadataNotFoundError)
    async def not_found_exception_handler(request: Request, exc: MetadataNotFoundError):
        statsd.increment("metadata.request.not_found")
        return error_response(404, str(exc))

    @app.exception_handler(NotConfiguredError)
    async def not_configured_exception_handler(request: Request, exc: NotConfiguredError):
        logging.warning(f"404 Error: {str(exc)}")
        statsd.increment("metadata.request.not_found")
        return error_response(404, str(exc))

    @app.exception_handler(IntentionalRemoteError)
    async def contract_rejection_exception_handler(
        request: Request, exc: IntentionalRemoteError
    ):
        logging.warning(f"400 Error: {str(exc)}")
        statsd.increment("metadata.request.contract_rejected")
        return error_response(400, str(exc))

    @app.exception_handler(InvalidRequestError)
    async def invalid_request_exception_handler(request: Request, exc: InvalidRequestError):
        logging.warning(f"400 Error: {str(exc)}")
        statsd.increment("metadata.request.invalid_arguments")
        return error_response(400, str(exc))

    @app.exception_handler(InvalidRemoteResponseError)
    async def invalid_response_exception_handler(
        request: Request, exc: InvalidRemoteResponseError
    ):
        logging.error(f"502 Error: {str(exc)}")
        statsd.increment("metadata.request.invalid_contract_response")
        return error_response(502, str(exc))

    @app.exception_handler(TransientFetchError)
    async def unavailable_exception_handler(request: Request, exc: TransientFetchError):
        logging.error(f"503 Error: {str(exc)}")
        statsd.increment("metadata.request.node_unavailable")
        return error_response(503, str(exc))

    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc: ValidationError):
        logging.error(f"400 Error: {str(exc)}")
        return error_response(400, str(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        error_traceback = traceback.format_exc()
        logging.error(f"500 Error: {str(exc)}")
        logging.error(f"Traceback: {error_traceback}")
        logging.error(f"Request Path: {request.url.path}")
        statsd.increment("metadata.request.unhandled_error")
        return error_response(500, str(exc))

    # Routes
    @app.get("/api/healthcheck")
    async def healthcheck():
        health = {"status": "ok", "web3": resolver.web3_enabled}
        if contract_service is not None:
            health["connection"] = str(contract_service.connection_state)
        return health

    @app.get("/token/{collection_name}/{token_id}")
    async def get_token_metadata(collection_name: str, token_id: int = Path(ge=0)):
        statsd.increment("metadata.request.count", tags=["route:static"])
        return resolver.resolve_static(collection_name, token_id)

    @app.get("/token/{collection_name}/{network}/{token_id}")
    async def get_onchain_token_metadata(
        collection_name: str, network: str, token_id: int = Path(ge=0)
    ):
        statsd.increment("metadata.request.count", tags=["route:onchain"])
        return await resolver.resolve(collection_name, network, token_id)

    return app
