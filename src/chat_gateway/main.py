"""
Chat Gateway Service

A FastAPI service that streams chat completions from multiple LLM
providers while metering credit spend as tokens are generated.

Features:
- Bearer-token authentication with subscriber and custom-key claims
- Premium model and tool gating
- OpenAI, Anthropic and Google streaming adapters
- Incremental, idempotent credit billing with end-of-stream reconciliation
- Persona tools executed mid-generation
- Ledger spend endpoint backed by PostgreSQL or memory
"""

import os
import uuid
import logging
from contextlib import asynccontextmanager
from typing import Optional, Tuple

import asyncpg
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .billing.store import InMemoryLedgerStore, LedgerStore, PostgresLedgerStore
from .core.config import GatewaySettings, load_config
from .core.errors import (
    AuthenticationError,
    ChatRequestError,
    InsufficientCreditsError,
    LedgerError,
    LedgerUnavailableError,
    UserNotFoundError,
)
from .core.telemetry import setup_logging, setup_tracing
from .models.billing import SpendRequest
from .models.request import ChatRequest
from .orchestrator import GatewayOrchestrator, GatewayServices

logger = logging.getLogger(__name__)

CHAT_PATHS = ("/v1/chat", "/functions/v1/gateway")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

STREAM_HEADERS = {
    **CORS_HEADERS,
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def error_response(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra}, headers=CORS_HEADERS)


async def _open_ledger_store(settings: GatewaySettings) -> Tuple[LedgerStore, Optional[asyncpg.Pool]]:
    """Ledger store and the pool backing it, if any."""
    database_url = settings.billing.database_url
    if database_url:
        try:
            pool = await asyncpg.create_pool(database_url, min_size=2, max_size=10)
        except Exception as e:
            logger.error(f"Could not connect to database: {e}")
            raise

        store = PostgresLedgerStore(pool)
        try:
            await store.init_tables()
        except Exception as e:
            logger.error(f"Could not initialize ledger tables: {e}")
            await pool.close()
            raise

        logger.info("Database connection established")
        return store, pool

    logger.warning("Using in-memory ledger store; balances are lost on restart")
    return InMemoryLedgerStore(), None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: GatewaySettings = app.state.settings
    setup_tracing("chat-gateway", settings.otel_endpoint)

    pool = None
    owned = app.state.orchestrator is None
    if owned:
        store, pool = await _open_ledger_store(settings)
        services = GatewayServices.from_settings(settings, ledger_store=store)
        app.state.orchestrator = GatewayOrchestrator(services, settings.billing, settings.tools)

    logger.info("Chat gateway started")
    yield

    orchestrator: GatewayOrchestrator = app.state.orchestrator
    await orchestrator.drain()
    if owned:
        await orchestrator.services.aclose()
        app.state.orchestrator = None
    if pool:
        await pool.close()

    logger.info("Chat gateway stopped")


def create_app(
    settings: Optional[GatewaySettings] = None,
    services: Optional[GatewayServices] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Gateway configuration; loaded from file/environment when omitted
        services: Pre-built collaborators; built from settings at startup when omitted
    """
    settings = settings or load_config()

    app = FastAPI(
        title="Chat Gateway",
        description="Streaming LLM gateway with metered credit billing",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = None
    if services is not None:
        app.state.orchestrator = GatewayOrchestrator(services, settings.billing, settings.tools)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    FastAPIInstrumentor.instrument_app(app)

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError):
        return error_response(401, exc.message)

    @app.exception_handler(ChatRequestError)
    async def chat_request_error_handler(request: Request, exc: ChatRequestError):
        if exc.reason:
            return error_response(exc.status_code, exc.message, reason=exc.reason)
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(InsufficientCreditsError)
    async def insufficient_credits_handler(request: Request, exc: InsufficientCreditsError):
        return error_response(402, InsufficientCreditsError.code)

    @app.exception_handler(UserNotFoundError)
    async def user_not_found_handler(request: Request, exc: UserNotFoundError):
        return error_response(404, UserNotFoundError.code)

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        logger.error(f"Ledger error: {exc}")
        return error_response(503, LedgerUnavailableError.code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return error_response(500, "Internal server error")

    async def chat(request: Request):
        """Stream a chat completion as server-sent events."""
        orchestrator: GatewayOrchestrator = request.app.state.orchestrator
        principal = await orchestrator.authenticate(request.headers.get("Authorization"))

        try:
            body = await request.json()
            chat_request = ChatRequest.model_validate(body)
        except (ValueError, ValidationError):
            raise ChatRequestError("Invalid request format", status_code=400)

        prepared = await orchestrator.prepare(principal, chat_request)
        return StreamingResponse(
            orchestrator.stream_chat(prepared),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    async def preflight():
        return PlainTextResponse("ok", headers=CORS_HEADERS)

    for path in CHAT_PATHS:
        app.add_api_route(path, chat, methods=["POST"])
        app.add_api_route(path, preflight, methods=["OPTIONS"], include_in_schema=False)

    @app.post("/v1/credits/spend")
    async def spend_credits(request: Request):
        """Debit the caller's credits; replays the outcome of a repeated idempotency key."""
        orchestrator: GatewayOrchestrator = request.app.state.orchestrator
        principal = await orchestrator.authenticate(request.headers.get("Authorization"))

        try:
            body = await request.json()
        except ValueError:
            return error_response(400, "Invalid request format")
        if not isinstance(body, dict):
            return error_response(400, "Invalid request format")

        amount = body.get("amount")
        if isinstance(amount, float) and amount.is_integer():
            amount = int(amount)
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            return error_response(400, "Invalid amount")

        store: Optional[LedgerStore] = orchestrator.services.ledger_store
        if store is None:
            return error_response(503, LedgerUnavailableError.code)

        try:
            spend = SpendRequest.model_validate({
                "idempotency_key": str(uuid.uuid4()),
                **body,
                "amount": amount,
            })
        except ValidationError:
            return error_response(400, "Invalid request format")

        result = await store.spend(principal.user_id, spend)
        return JSONResponse(content=result.model_dump(), headers=CORS_HEADERS)

    @app.options("/v1/credits/spend", include_in_schema=False)
    async def spend_preflight():
        return PlainTextResponse("ok", headers=CORS_HEADERS)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return JSONResponse(
            content={"status": "healthy", "service": "chat-gateway"},
            headers=CORS_HEADERS,
        )

    return app


def main():
    settings = load_config()
    setup_logging(settings.log_level)

    import uvicorn
    uvicorn.run(
        create_app(settings),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
    )


if __name__ == "__main__":
    main()
