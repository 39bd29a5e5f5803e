from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import AsyncIterator, Optional
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..config import Settings
from ..infrastructure.chat_store import ChatStore, build_chat_store
from ..infrastructure.events import EventPublisher
from ..observability.metrics import metrics_middleware_factory
from ..security.rate_limit import RateLimiter
from ..services.persistence import PersistenceSink
from ..services.providers import CompletionProvider, build_provider
from ..services.relay import StreamRelay
from .routers.chat import router as chat_router

load_dotenv()  # Load environment variables from .env if present (OPENAI_API_KEY, LOCAL_BASE_URL, etc.)

logging.basicConfig(level=logging.INFO)

API_NAME = "Chat Relay API"
API_VERSION = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ChatStore] = None,
    provider: Optional[CompletionProvider] = None,
    limiter: Optional[RateLimiter] = None,
    events: Optional[EventPublisher] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    store = store or build_chat_store(settings)
    events = events or EventPublisher(settings.redis_url)
    provider = provider or build_provider(settings)
    relay = StreamRelay(
        provider,
        PersistenceSink(store, events),
        max_stream_seconds=settings.max_stream_seconds,
        upstream_retries=settings.upstream_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await relay.aclose()
        await events.close()

    app = FastAPI(title=API_NAME, version=API_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.relay = relay
    app.state.limiter = limiter or RateLimiter.from_settings(settings)

    # Observability: request latency histogram
    app.middleware("http")(metrics_middleware_factory())

    app.include_router(chat_router)
    # Also expose the same routes under /api
    app.include_router(chat_router, prefix="/api")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Stream-Id", "Retry-After"],
    )

    def _health() -> dict:
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "components": {
                "api": "ok",
                "store": settings.store_impl,
                "provider": relay.provider.name,
                "open_streams": len(relay.registry),
            },
        }

    def _metrics() -> Response:
        data = generate_latest(REGISTRY)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    for prefix in ("", "/api"):
        app.add_api_route(f"{prefix}/health", _health, methods=["GET"])
        app.add_api_route(f"{prefix}/metrics", _metrics, methods=["GET"])

    @app.get("/")
    def root():
        return {"name": API_NAME, "version": API_VERSION}

    return app


app = create_app()
