"""Domain records shared by the store, the executor and the orchestrator."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class Role(str, Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class BookingStatus(str, Enum):
    """Booking lifecycle: pending -> confirmed -> cancelled (terminal)."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


# Allowed status moves; a reschedule keeps ``confirmed``.
BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CANCELLED: frozenset(),
}


class Service(BaseModel):
    """A bookable consultation from the static catalog."""

    id: str
    name: str
    description: str
    duration_minutes: int
    price: float
    image_url: str = ""


class TimeSlot(BaseModel):
    time: str
    available: bool = True


class UserDetails(BaseModel):
    name: str
    email: str
    phone: str


class Booking(BaseModel):
    """A stored appointment.  ``id`` never changes once assigned."""

    id: str
    service_id: str
    service_name: str
    date: dt.date
    time: str
    user_details: UserDetails
    status: BookingStatus = BookingStatus.PENDING
    created_at: dt.datetime = Field(default_factory=_utcnow)
    updated_at: dt.datetime = Field(default_factory=_utcnow)
    idempotency_key: str | None = None


class BookingDraft(BaseModel):
    """Validated input for ``BookingStore.create_booking``."""

    service_id: str
    date: dt.date
    time: str
    user_details: UserDetails


class OtpChallenge(BaseModel):
    """A verification code issued to a phone number."""

    phone: str
    issued_code: str
    issued_at: dt.datetime = Field(default_factory=_utcnow)
    expires_at: dt.datetime
    attempts: int = 0
    consumed: bool = False

    def is_expired(self, now: dt.datetime | None = None) -> bool:
        return (now or _utcnow()) >= self.expires_at


class ConversationTurn(BaseModel):
    """One entry in a session's append-only history.

    SYSTEM turns carry machine-generated facts.  They are fed back to the
    model but never rendered in the visible transcript.
    """

    model_config = ConfigDict(frozen=True)

    role: Role
    text: str = ""
    action: str | None = None
    payload: dict[str, Any] | None = None
    timestamp: dt.datetime = Field(default_factory=_utcnow)


class FreshFacts(BaseModel):
    """Ground truth produced by the last executor call.

    Injected into the next model call so the model only repeats state it
    was actually given.  Unset fields are omitted from the prompt.
    """

    services: list[Service] | None = None
    slots: list[TimeSlot] | None = None
    slots_for: dict[str, str] | None = None
    bookings: list[Booking] | None = None
    verification_result: bool | None = None
    booking: Booking | None = None
    cancelled: bool | None = None
    not_found: str | None = None
    missing_fields: list[str] | None = None
    slot_unavailable: bool | None = None
    failure_reason: str | None = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class MessageType(str, Enum):
    """How the chat widget should render a message."""

    TEXT = "text"
    SERVICE_CAROUSEL = "service_carousel"
    TIME_PICKER = "time_picker"
    OTP_INPUT = "otp_input"
    CONFIRMATION = "confirmation"


class ChatMessage(BaseModel):
    """One renderable message handed to the presentation layer."""

    role: Role = Role.ASSISTANT
    text: str = ""
    message_type: MessageType = MessageType.TEXT
    payload: dict[str, Any] | None = None
    quick_replies: list[str] = Field(default_factory=list)
