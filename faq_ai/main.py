from fastapi import FastAPI, Request, Query
from fastapi.responses import JSONResponse, Response
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import StreamingResponse
from starlette.routing import Match
from contextlib import asynccontextmanager
from typing import Any, List, Optional
import base64
import json
import logging
import os
import time

from dotenv import load_dotenv
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from faq_ai.config import Settings, load_settings
from faq_ai.dispatch.dispatcher import Degraded, Dispatcher
from faq_ai.metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL
from faq_ai.middleware.request_id import RequestIdMiddleware

# Load environment variables from .env, but not during pytest to keep tests deterministic
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

logger = logging.getLogger("faq_ai")


def configure_logging(level_name: str) -> None:
    """Emit the faq_ai logger hierarchy on one stream handler, JSON messages as-is."""
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    # Avoid double logging when uvicorn's root handlers are installed
    logger.propagate = False


def build_dispatcher(settings: Settings) -> Dispatcher:
    return Dispatcher.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    configure_logging(settings.log_level)
    app.state.settings = settings  # type: ignore[attr-defined]
    app.state.dispatcher = build_dispatcher(settings)  # type: ignore[attr-defined]
    try:
        yield
    finally:
        app.state.dispatcher = None  # type: ignore[attr-defined]


app = FastAPI(
    title="SBO FAQ AI API",
    description="AI chat for the SBO FAQ bot with provider/credential failover.",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
    allow_credentials=False,
)
app.add_middleware(RequestIdMiddleware)


@app.middleware("http")
async def _http_metrics_middleware(request: Request, call_next):
    t0 = time.perf_counter()
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 500)
        return response
    finally:
        path = _route_label(request)
        status_class = f"{status_code // 100}xx"
        HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status_class=status_class).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(time.perf_counter() - t0)


def _route_label(request: Request) -> str:
    """Route template for metric labels; unknown paths share one label."""
    route = request.scope.get("route")
    if route is not None and getattr(route, "path", None):
        return route.path
    for candidate in request.app.routes:
        match, _ = candidate.matches(request.scope)
        if match != Match.NONE:
            return getattr(candidate, "path", "unmatched")
    return "unmatched"


def _request_id(request: Request) -> Optional[str]:
    return getattr(getattr(request, "state", object()), "request_id", None) or request.headers.get("x-request-id")


def _dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def _sse_data_event(text: str) -> str:
    """
    Encode text as a well-formed SSE data event.
    Every line, blank ones included, becomes its own data line so the client
    rebuilds the chunk with its newlines intact.
    """
    lines = str(text).replace("\r\n", "\n").split("\n")
    return "".join(f"data: {line}\n" for line in lines) + "\n"


def _decode_history(encoded: Optional[str]) -> List[Any]:
    """Decode a base64url JSON array of {role, content}; anything malformed is an empty history."""
    if not encoded:
        return []
    s = str(encoded)
    pad = "=" * (-len(s) % 4)
    try:
        decoded = base64.urlsafe_b64decode((s + pad).encode("utf-8")).decode("utf-8", errors="ignore")
        arr = json.loads(decoded)
    except ValueError:
        return []
    return arr if isinstance(arr, list) else []


@app.get("/health", tags=["meta"], description="Liveness endpoint for health checks.")
async def health():
    return {"status": "ok"}


@app.get("/metrics", tags=["meta"], include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/api/ai/chat", tags=["chat"], description="Chat with the AI assistant; provider failover is automatic.")
async def ai_chat(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse({"detail": "Invalid JSON body"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"detail": "Invalid JSON body"}, status_code=400)

    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        return JSONResponse({"detail": "Message is required"}, status_code=400)
    history = payload.get("conversationHistory")
    if not isinstance(history, list):
        history = []

    outcome = await _dispatcher(request).send(message, history, request_id=_request_id(request))
    degraded = isinstance(outcome, Degraded)
    return {
        "success": True,
        "response": outcome.text,
        "degraded": degraded,
        "backend": None if degraded else outcome.backend,
    }


@app.get("/api/ai/chat/stream", tags=["chat"], description="SSE stream of chat tokens with provider failover.")
async def ai_chat_stream(
    request: Request,
    message: Optional[str] = Query(None, description="User message"),
    history: Optional[str] = Query(None, description="Optional base64url-encoded JSON array of messages"),
):
    if not message or not message.strip():
        return JSONResponse({"detail": "Message is required"}, status_code=400)
    dispatcher = _dispatcher(request)
    request_id = _request_id(request)

    async def event_stream():
        async for chunk in dispatcher.stream(message, _decode_history(history), request_id=request_id):
            yield _sse_data_event(chunk)
        yield "data: [DONE]\n\n"

    headers = {
        "Cache-Control": "no-cache, no-transform",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_stream(), media_type="text/event-stream; charset=utf-8", headers=headers)


@app.get("/api/ai/providers", tags=["meta"], description="Read-only health snapshot of configured AI resources.")
async def ai_providers(request: Request):
    dispatcher = _dispatcher(request)
    return {
        "backends": dispatcher.backends_info(),
        "resources": dispatcher.snapshot(),
        "maxAttempts": dispatcher.max_attempts,
    }
