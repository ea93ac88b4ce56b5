"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator

from medcore.models import Booking, ChatMessage, Service


class ChatRequest(BaseModel):
    """Incoming chat message from the widget.

    ``action`` and ``action_payload`` are set when the message comes from a
    UI control (a service card, a slot button) rather than free typing.
    """

    message: str = Field("", max_length=2000, description="The user's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )
    action: str | None = Field(None, max_length=50, description="UI-originated action name")
    action_payload: dict[str, Any] | None = Field(None, description="UI-originated payload")

    @model_validator(mode="after")
    def check_has_content(self) -> ChatRequest:
        if not self.message.strip() and not self.action:
            raise ValueError("message must not be empty")
        return self


class ChatResponse(BaseModel):
    """The assistant's messages for one turn."""

    session_id: str = Field(..., description="The session ID for this conversation")
    messages: list[ChatMessage] = Field(default_factory=list)
    reply: str = Field("", description="Text of the last message, for plain clients")


class SessionResponse(BaseModel):
    """Visible transcript of a session."""

    session_id: str
    messages: list[ChatMessage] = Field(default_factory=list)
    typing: bool = False


class ServicesResponse(BaseModel):
    services: list[Service]


class BookingsResponse(BaseModel):
    bookings: list[Booking]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "medcore-booking-assistant"
