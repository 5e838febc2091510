"""
Live Caption Call - Main Application

This is the entry point for the FastAPI application.
It handles:
- REST API endpoints (session control, captions toggle, audio ingestion)
- WebSocket caption feed
- Session runtime startup and shutdown
"""
from contextlib import asynccontextmanager
import logging
from datetime import datetime, UTC
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from caption_call.api import router as api_router
from caption_call.api.websocket import router as ws_router
from caption_call.config.settings import settings
from caption_call.services.gcp.speech import create_speech_engine
from caption_call.services.metrics import start_metrics_server
from caption_call.services.session import CallSessionRuntime
from caption_call.services.translation import create_translation_backend
from caption_call.services.transport import close_signal_redis, create_redis_transport

# Configure logging
logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)
logger = logging.getLogger(__name__)


def build_runtime() -> CallSessionRuntime:
    """Session runtime backed by Redis signaling and Google Cloud speech/translation."""
    return CallSessionRuntime(
        transport_factory=create_redis_transport,
        engine_factory=create_speech_engine,
        translation_backend=create_translation_backend(),
        probe_channels=True,
    )


def create_app(runtime: Optional[CallSessionRuntime] = None) -> FastAPI:
    """
    Build the FastAPI app around a session runtime.

    Tests pass a runtime wired to in-memory fakes; by default one is built
    from settings on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # === STARTUP ===
        logger.info("🚀 Starting Live Caption Call...")

        if settings.METRICS_PORT:
            start_metrics_server(settings.METRICS_PORT)

        app.state.runtime = runtime or build_runtime()
        await app.state.runtime.start()
        logger.info("✅ Session runtime started")

        yield  # Application runs here

        # === SHUTDOWN ===
        logger.info("🛑 Shutting down...")
        await app.state.runtime.shutdown()
        await close_signal_redis()

    app = FastAPI(
        title="Live Caption Call",
        description="Two-party calls with live translated captions",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"http://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include REST API routes
    app.include_router(api_router, prefix="/api")

    # Include WebSocket routes
    app.include_router(ws_router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Live Caption Call",
            "version": "1.0.0",
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        runtime = app.state.runtime
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "local_id": runtime.machine.local_id,
            "state": runtime.machine.state.value,
            "captions_enabled": runtime.transcription.enabled,
        }

    return app


app = create_app()
