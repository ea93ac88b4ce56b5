"""HTTP entry point for the MedCore booking assistant.

    uv run uvicorn medcore.server:app --reload --host 0.0.0.0 --port 8000

The dialogue loop and the booking store live on ``app.state`` for the life
of the process; routes reach them through ``request.app.state``.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from medcore.api.routes import router
from medcore.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from medcore.executor import ActionExecutor
from medcore.orchestrator import SessionManager, TurnOrchestrator
from medcore.services.booking_store import BookingStore
from medcore.services.metrics import metrics
from medcore.translator import IntentTranslator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Wire store -> executor -> orchestrator -> sessions, flush metrics on exit."""
    store = BookingStore()
    orchestrator = TurnOrchestrator(IntentTranslator(), ActionExecutor(store))
    application.state.store = store
    application.state.sessions = SessionManager(orchestrator)
    logger.info("Booking assistant ready (%d services)", len(await store.list_services()))
    try:
        yield
    finally:
        logger.info("Shutting down; flushing metrics")
        metrics.flush()


app = FastAPI(
    title="MedCore Booking Assistant",
    description=(
        "Conversational booking for MedCore Health: choose a service, "
        "verify your phone, pick a slot, reschedule or cancel."
    ),
    version=API_VERSION,
    lifespan=lifespan,
)

# The chat widget is served from another origin.
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def trace_request(request: Request, call_next) -> Response:
    """Tag each request with ``X-Request-ID`` and log its status and latency."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "[%s] %s %s -> %d (%.0f ms)",
        request_id, request.method, request.url.path,
        response.status_code, (time.perf_counter() - started) * 1000,
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    return {
        "service": "MedCore Booking Assistant",
        "version": API_VERSION,
        "docs": "/docs",
        "health": "/api/health",
        "endpoints": {
            "chat": "/api/chat",
            "sessions": "/api/sessions/{session_id}",
            "services": "/api/services",
            "report": "/api/admin/report",
        },
    }


if __name__ == "__main__":
    logger.info("Serving MedCore API on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run("medcore.server:app", host=SERVER_HOST, port=SERVER_PORT, reload=True)
