# app/main.py
"""
Application factory for the x402 multi-facilitator merchant server.

Run with:
    uvicorn app.main:create_app --factory --port 4021
or:
    python -m app.main
"""
import logging
import sys
from contextlib import asynccontextmanager
from typing import Mapping, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.endpoints import merchant
from app.core.config import Settings, get_settings
from app.x402.audit import AuditLog
from app.x402.catalog import build_route_registry
from app.x402.errors import ConfigurationError
from app.x402.facilitator import FacilitatorClient
from app.x402.gate import PaymentGate
from app.x402.middleware import X402Middleware, internal_server_error_response
from app.x402.nonces import NonceStore
from app.x402.receipts import X_PAYMENT_RESPONSE_HEADER

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    facilitator_clients: Optional[Mapping[str, FacilitatorClient]] = None,
    nonce_store: Optional[NonceStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the merchant application.

    Args:
        settings: Configuration; loaded from the environment when omitted
        facilitator_clients: Clients keyed by facilitator name (defaults to
            one HTTP client per configured facilitator)
        nonce_store: Replay-protection store shared by all requests
        transport: httpx transport for the default facilitator clients

    Raises:
        ConfigurationError: if the configuration is incomplete or invalid.
    """
    settings = settings or get_settings()

    # Configure basic logging
    logging.basicConfig(level=settings.LOG_LEVEL.upper())

    registry = build_route_registry(settings)
    if facilitator_clients is None:
        facilitator_clients = {
            binding.name: FacilitatorClient(binding, transport=transport)
            for binding in registry.bindings()
        }
    gate = PaymentGate(
        registry=registry,
        clients=facilitator_clients,
        nonce_store=nonce_store or NonceStore(
            cleanup_interval=settings.X402_NONCE_CLEANUP_INTERVAL_SECONDS
        ),
        audit=AuditLog(settings.X402_AUDIT_LOG_PATH, enabled=settings.X402_AUDIT_ENABLED),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{settings.PROJECT_NAME} ready with {len(registry)} paid route(s)")
        yield
        await gate.aclose()

    app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.gate = gate

    # Middleware added last runs first: CORS must also wrap 402 answers
    app.add_middleware(X402Middleware, gate=gate)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[X_PAYMENT_RESPONSE_HEADER],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={
                    "success": False,
                    "error": "Not found",
                    "message": "The requested endpoint does not exist",
                },
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return internal_server_error_response()

    app.include_router(merchant.router)
    return app


def main() -> None:
    try:
        settings = get_settings()
        app = create_app(settings)
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Refusing to start: {e.message}")
        sys.exit(1)
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    main()
