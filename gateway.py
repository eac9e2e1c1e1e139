#!/usr/bin/env python3
"""
Streaming completion gateway.

Accepts a conversation over HTTP, routes it to the provider that serves the
requested model, and streams the completion back to the client as plain
incremental text.
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

import httpx
from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from auth_gate import AuthGate
from conversation import last_human_text, read_credential, validate_generate_request
from gateway_errors import GatewayError, ValidationError
from prompt_builder import build_request, count_tokens
from providers import ProviderConfig, ProviderRegistry
from settings import GatewaySettings
from sse_reframer import reframe
from upstream import UpstreamDispatcher, UpstreamReader

load_dotenv()

# Logging setup
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

GATEWAY_START_TIME = time.time()
GATEWAY_VERSION = "1.0.0"

GENERATE_PATH = "/generate-chat-completion-streaming"

# ─────────────────────────────────────────────────────────────────────────────
# Prometheus Metrics
# ─────────────────────────────────────────────────────────────────────────────

request_counter = Counter(
    'gateway_requests_total',
    'Total number of requests',
    ['endpoint', 'status']
)

request_latency = Histogram(
    'gateway_request_duration_seconds',
    'Request latency in seconds, including the streamed body',
    ['endpoint']
)

error_counter = Counter(
    'gateway_errors_total',
    'Total number of errors',
    ['endpoint', 'error_type']
)


# ─────────────────────────────────────────────────────────────────────────────
# Helper functions
# ─────────────────────────────────────────────────────────────────────────────

def get_or_generate_request_id(request: Request) -> str:
    """Get X-Request-Id from request headers or generate a new one."""
    request_id = request.headers.get("X-Request-Id")
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex}"


def error_payload(message: str) -> dict:
    return {"success": False, "error": {"message": message}}


async def read_json_body(request: Request) -> Any:
    """
    Decode the request body as JSON.

    Plain-text bodies are accepted when the client asks for it with
    `?force-json=true`.
    """
    content_type = request.headers.get("content-type", "")
    force_json = request.query_params.get("force-json") == "true"
    if "json" not in content_type and not force_json:
        raise ValidationError("Expected a JSON body (use ?force-json=true for text bodies)")

    raw = await request.body()
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Invalid JSON: {str(e)}") from e


def _record(endpoint: str, status: str, start_time: float) -> None:
    request_counter.labels(endpoint=endpoint, status=status).inc()
    request_latency.labels(endpoint=endpoint).observe(time.time() - start_time)


# ─────────────────────────────────────────────────────────────────────────────
# Error handling
# ─────────────────────────────────────────────────────────────────────────────

async def gateway_error_handler(request: Request, exc: GatewayError):
    """
    Report failures raised before any response byte was sent.

    Upstream statuses are not mapped onto the client response:
    the client always gets a 200 with {success: false, error: {message}}.
    """
    request_id = getattr(request.state, "request_id", None) or get_or_generate_request_id(request)
    endpoint = request.url.path
    error_counter.labels(endpoint=endpoint, error_type=exc.error_type).inc()
    start_time = getattr(request.state, "start_time", None)
    if start_time is not None:
        _record(endpoint, "error", start_time)

    logger.warning(f"{type(exc).__name__}: {exc.message} | path={endpoint} request_id={request_id}")
    return JSONResponse(
        content=error_payload(exc.message),
        headers={"X-Request-Id": request_id},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Streaming handler
# ─────────────────────────────────────────────────────────────────────────────

async def forward_stream(
    reader: UpstreamReader,
    provider: ProviderConfig,
    request_id: str,
    start_time: float,
) -> AsyncIterator[str]:
    """
    Forward reframed fragments to the client in decode order.

    Headers are already committed at this point, so failures are logged and
    re-raised to make the server drop the connection. Client disconnects
    cancel this generator; either way the upstream reader gets closed.
    """
    completion: list[str] = []
    fragments = reframe(reader, provider.api_style)
    try:
        async for fragment in fragments:
            completion.append(fragment)
            yield fragment

        _record(GENERATE_PATH, "200", start_time)
        text = "".join(completion)
        logger.info(f"Completion finished: {len(text)} chars | model={provider.model} request_id={request_id}")
        logger.debug(f"completion: {text.strip()}")
    except Exception:
        error_counter.labels(endpoint=GENERATE_PATH, error_type="streaming_error").inc()
        _record(GENERATE_PATH, "500", start_time)
        logger.exception(f"Streaming error after response started: request_id={request_id}")
        raise
    finally:
        await fragments.aclose()
        await reader.aclose()


async def _single_chunk(text: str) -> AsyncIterator[str]:
    yield text


# ─────────────────────────────────────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────────────────────────────────────

router = APIRouter()


@router.get("/")
async def root():
    return PlainTextResponse("OK")


@router.post(GENERATE_PATH)
async def generate_chat_completion_streaming(request: Request):
    """
    Stream a completion for the submitted conversation.

    validate → resolve provider → auth (privileged models) → build request →
    dispatch → reframe and forward.
    """
    request_id = get_or_generate_request_id(request)
    request.state.request_id = request_id
    start_time = time.time()
    request.state.start_time = start_time

    settings: GatewaySettings = request.app.state.settings
    registry: ProviderRegistry = request.app.state.registry
    auth_gate: AuthGate = request.app.state.auth_gate
    dispatcher: UpstreamDispatcher = request.app.state.dispatcher

    try:
        body = await read_json_body(request)
        generate = validate_generate_request(request.cookies, body, settings.default_model)

        logger.info(f"model={generate.model} | request_id={request_id}")
        logger.info(f"human-prompt: {last_human_text(generate.conversation)}")

        provider = registry.resolve(generate.model)
        if provider.requires_auth:
            auth_gate.require_authorized(generate.credential)

        outbound = build_request(
            generate.conversation,
            generate.model,
            provider,
            temperature=settings.temperature,
            tokenizer=request.app.state.tokenizer,
        )
        headers = {
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Request-Id": request_id,
        }

        if not provider.streaming:
            completion = await dispatcher.complete(outbound, provider)
            _record(GENERATE_PATH, "200", start_time)
            logger.info(f"Completion finished: {len(completion)} chars | model={provider.model} request_id={request_id}")
            return StreamingResponse(_single_chunk(completion), media_type="text/plain", headers=headers)

        reader = await dispatcher.open_stream(outbound, provider)
    except GatewayError:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error in generate: request_id={request_id}")
        raise GatewayError(f"Unexpected error: {str(e)}") from e

    return StreamingResponse(
        forward_stream(reader, provider, request_id, start_time),
        media_type="text/event-stream",
        headers=headers,
    )


@router.post("/is-authed")
async def is_authed(request: Request):
    """Answer whether the credential cookie is authorized. Never looks at conversation data."""
    request_id = get_or_generate_request_id(request)
    request.state.request_id = request_id
    auth_gate: AuthGate = request.app.state.auth_gate

    credential = read_credential(request.cookies)
    return JSONResponse(
        content={"success": True, "isAuthed": auth_gate.is_authorized(credential)},
        headers={"X-Request-Id": request_id},
    )


@router.get("/health")
async def health(request: Request):
    """Health check with uptime and provider configuration (no secrets)."""
    registry: ProviderRegistry = request.app.state.registry
    auth_gate: AuthGate = request.app.state.auth_gate
    return {
        "status": "ok",
        "uptime_seconds": int(time.time() - GATEWAY_START_TIME),
        "version": GATEWAY_VERSION,
        "providers": registry.configured_hosts(),
        "auth_configured": auth_gate.configured,
    }


@router.get("/models")
async def models(request: Request):
    registry: ProviderRegistry = request.app.state.registry
    return {"success": True, "models": registry.models()}


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ─────────────────────────────────────────────────────────────────────────────
# App factory
# ─────────────────────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[GatewaySettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    tokenizer: Optional[Callable[[str, str], int]] = None,
) -> FastAPI:
    """
    Build the gateway application.

    The upstream client lives for the lifespan of the app.
    `transport` replaces the network transport of the upstream client, which
    lets tests serve upstream responses from an httpx.MockTransport.
    `tokenizer` replaces the tiktoken-based prompt token counter.
    """
    if settings is None:
        settings = GatewaySettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = httpx.AsyncClient(timeout=httpx.Timeout(settings.timeout_s), transport=transport)
        app.state.dispatcher = UpstreamDispatcher(client)
        try:
            yield
        finally:
            await client.aclose()

    app = FastAPI(title="Streaming Completion Gateway", version=GATEWAY_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = ProviderRegistry(settings)
    app.state.auth_gate = AuthGate(settings.auth_key)
    app.state.tokenizer = tokenizer or count_tokens

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.include_router(router)

    if settings.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.allowed_origins),
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "X-Request-Id"],
            expose_headers=["X-Request-Id"],
        )
    logger.info(f"Gateway configured: {settings!r}")
    return app


app = create_app()


# ─────────────────────────────────────────────────────────────────────────────
# Main entry point
# ─────────────────────────────────────────────────────────────────────────────

def main() -> None:
    import uvicorn

    settings: GatewaySettings = app.state.settings
    logging.getLogger().setLevel(settings.log_level)
    ssl_options = {}
    if settings.ssl_keyfile and settings.ssl_certfile:
        ssl_options = {"ssl_keyfile": settings.ssl_keyfile, "ssl_certfile": settings.ssl_certfile}

    uvicorn.run(app, host=settings.host, port=settings.port, **ssl_options)


if __name__ == "__main__":
    main()
