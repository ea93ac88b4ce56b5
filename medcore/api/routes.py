"""FastAPI route definitions for the MedCore booking assistant API."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from medcore.api.schemas import (
    BookingsResponse,
    ChatRequest,
    ChatResponse,
    HealthResponse,
    ServicesResponse,
    SessionResponse,
)
from medcore.models import ChatMessage
from medcore.orchestrator import SessionManager
from medcore.services.booking_store import BookingStore
from medcore.services.reporting import BookingReport, build_report

logger = logging.getLogger(__name__)

router = APIRouter()

_NOT_READY = "The assistant is still starting up. Please try again in a moment."
_INTERNAL = "An internal error occurred. Please try again."


def _get_sessions(request: Request) -> SessionManager:
    """Retrieve the SessionManager from app state.

    Built once during the FastAPI lifespan (see ``server.py``).
    """
    sessions = getattr(request.app.state, "sessions", None)
    if sessions is None:
        raise HTTPException(status_code=503, detail=_NOT_READY)
    return sessions


def _get_store(request: Request) -> BookingStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail=_NOT_READY)
    return store


def _chat_response(session_id: str, messages: list[ChatMessage]) -> ChatResponse:
    reply = messages[-1].text if messages else ""
    return ChatResponse(session_id=session_id, messages=messages, reply=reply)


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Send a message to the assistant and get this turn's messages back.

    Messages for the same ``session_id`` are processed one at a time in
    arrival order; a second request waits for the first to finish.
    """
    sessions = _get_sessions(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        messages = await sessions.handle(
            request.session_id,
            request.message,
            action=request.action,
            payload=request.action_payload,
        )
    except Exception as e:
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(status_code=500, detail=_INTERNAL) from e

    return _chat_response(request.session_id, messages)


@router.post("/sessions/{session_id}/start", response_model=ChatResponse)
async def start_session(session_id: str, http_request: Request):
    """Produce the opening greeting for a new session."""
    sessions = _get_sessions(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        messages = await sessions.start(session_id)
    except Exception as e:
        logger.exception("[%s] Error starting session", request_id)
        raise HTTPException(status_code=500, detail=_INTERNAL) from e

    return _chat_response(session_id, messages)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, http_request: Request):
    """Visible transcript plus whether a turn is in flight."""
    session = _get_sessions(http_request).peek(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found.")
    return SessionResponse(
        session_id=session_id,
        messages=session.transcript,
        typing=session.typing,
    )


@router.delete("/sessions/{session_id}", status_code=204)
async def reset_session(session_id: str, http_request: Request):
    """Start over: cancel any in-flight turn and clear the history."""
    await _get_sessions(http_request).reset(session_id)


@router.get("/services", response_model=ServicesResponse)
async def list_services(http_request: Request):
    store = _get_store(http_request)
    return ServicesResponse(services=await store.list_services())


@router.get("/admin/bookings", response_model=BookingsResponse)
async def list_bookings(http_request: Request):
    """Every stored booking, oldest first."""
    store = _get_store(http_request)
    return BookingsResponse(bookings=await store.list_all())


@router.get("/admin/report", response_model=BookingReport)
async def booking_report(http_request: Request):
    """Totals per status, revenue and bookings per day."""
    store = _get_store(http_request)
    return await build_report(store)
