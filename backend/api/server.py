"""
Payment Event Pipeline Server
=============================
FastAPI boundary for the pipeline:
- Signed provider webhooks (verify -> dedupe -> route -> reconcile)
- Browser event relay into the outbound delivery queue
- Delivery stats and dead-letter replay
- Health monitoring

pip install fastapi uvicorn pydantic structlog
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import PipelineSettings, configure_logging
from pipeline.context import PipelineContext
from pipeline.errors import EventValidationError, QueueFullError
from pipeline.signature import SIGNATURE_HEADER
from schemas.event_definitions import MAX_EVENTS_PER_REQUEST, BatchedEvent, OutboundEvent

VERSION = "1.0.0"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")


config = ServerConfig()

# Configure structured logging
configure_logging(logging.DEBUG if config.DEBUG else logging.INFO)

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CollectEvent(BaseModel):
    name: str = Field(..., min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)


class CollectRequest(BaseModel):
    """Browser-originated events relayed through the server queue"""
    client_id: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    user_properties: Optional[Dict[str, Any]] = None
    events: List[CollectEvent] = Field(..., min_length=1, max_length=MAX_EVENTS_PER_REQUEST)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    forwarding_enabled: bool
    queue_size: int
    processed_events: int
    dead_letters: int


# =============================================================================
# APP FACTORY
# =============================================================================

def _context(request: Request) -> PipelineContext:
    return request.app.state.pipeline


def _require_queue(ctx: PipelineContext):
    if ctx.queue is None:
        raise HTTPException(status_code=503, detail="Analytics forwarding is disabled")
    return ctx.queue


def create_app(
    settings: Optional[PipelineSettings] = None,
    context: Optional[PipelineContext] = None,
) -> FastAPI:
    """Build the app. ``context`` overrides construction from settings (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        ctx = context
        if ctx is None:
            resolved = settings or PipelineSettings.from_env()
            errors, warnings = resolved.validate()
            for warning in warnings:
                logger.warning("config_warning", detail=warning)
            if errors:
                for error in errors:
                    logger.error("config_error", detail=error)
                raise RuntimeError("invalid pipeline configuration: " + "; ".join(errors))
            ctx = PipelineContext.build(resolved)

        logger.info("server_starting", version=VERSION, env=ctx.settings.environment)
        app.state.pipeline = ctx
        app.state.started_at = datetime.now(timezone.utc)
        await ctx.start()

        yield

        logger.info("server_shutting_down")
        await ctx.stop(flush=True)

    app = FastAPI(
        title="Payment Event Pipeline",
        description="Verified payment webhooks, idempotent reconciliation and analytics forwarding",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id

        return response

    # =========================================================================
    # HEALTH ENDPOINTS
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint"""
        ctx = _context(request)
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        dead_letter_stats = await ctx.dead_letters.get_stats()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            forwarding_enabled=ctx.queue is not None,
            queue_size=ctx.queue.size() if ctx.queue is not None else 0,
            processed_events=await ctx.processed_events.count(),
            dead_letters=dead_letter_stats["pending"],
        )

    @app.get("/ready")
    async def readiness_check(request: Request):
        """Kubernetes readiness probe"""
        ctx = _context(request)
        ready = ctx.database is None or ctx.database.initialized
        return JSONResponse(status_code=200 if ready else 503, content={"ready": ready})

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    # =========================================================================
    # WEBHOOK ENDPOINT
    # =========================================================================

    @app.post("/api/v1/webhooks/provider")
    async def provider_webhook(request: Request):
        """
        Signed payment notifications. 400 on a bad signature, 5xx when the
        provider should redeliver, 200 for everything else.
        """
        payload = await request.body()
        result = await _context(request).processor.process(
            payload, request.headers.get(SIGNATURE_HEADER)
        )
        return JSONResponse(status_code=result.status_code, content=result.body)

    # =========================================================================
    # BROWSER EVENT RELAY
    # =========================================================================

    @app.post("/api/v1/collect", status_code=202)
    async def collect(body: CollectRequest, request: Request):
        """Relay browser events; one request's events share one sink request."""
        queue = _require_queue(_context(request))

        first, rest = body.events[0], body.events[1:]
        event = OutboundEvent(
            name=first.name,
            params=first.params,
            batched=[BatchedEvent(name=e.name, params=e.params) for e in rest],
            client_id=body.client_id,
            session_id=body.session_id,
            user_id=body.user_id,
            user_properties=body.user_properties,
        )
        try:
            queue.enqueue(event)
        except EventValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except QueueFullError as e:
            logger.warning("collect_rejected_full", events=len(body.events), size=queue.size())
            raise HTTPException(status_code=429, detail=str(e))

        return {"accepted": len(body.events), "event_id": event.event_id}

    # =========================================================================
    # DELIVERY ADMIN
    # =========================================================================

    @app.get("/api/v1/delivery/stats")
    async def delivery_stats(request: Request):
        ctx = _context(request)
        return {
            "queue": ctx.queue.stats() if ctx.queue is not None else None,
            "dead_letters": await ctx.dead_letters.get_stats(),
            "processed_events": await ctx.processed_events.count(),
        }

    @app.get("/api/v1/delivery/dead-letters")
    async def list_dead_letters(request: Request, kind: Optional[str] = None, limit: int = 50):
        if kind is not None and kind not in ("delivery", "reconciliation"):
            raise HTTPException(status_code=400, detail="kind must be 'delivery' or 'reconciliation'")
        entries = await _context(request).dead_letters.list(kind=kind, limit=limit)
        return {
            "entries": [e.model_dump(mode="json") for e in entries],
            "total": len(entries),
        }

    @app.post("/api/v1/delivery/dead-letters/retry")
    async def retry_dead_letters(request: Request, limit: int = 100):
        queue = _require_queue(_context(request))
        replayed = await queue.replay_dead_letters(limit=limit)
        return {"replayed": replayed}

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
