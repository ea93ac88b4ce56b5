"""Structured model output: the closed action set and its payload schemas.

The model replies with one JSON object per call.  ``Intent`` validates the
envelope; ``parse_payload`` validates ``action_payload`` against the model
registered for that action in ``PAYLOAD_MODELS``.  An action name outside
``ActionName`` is a validation error, never passed through.
"""

from __future__ import annotations

import datetime as dt
import math
import re
from enum import Enum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from medcore.utils import normalize_phone, normalize_slot_time

MAX_SUGGESTIONS = 4

# Loose RFC 5322 address pattern.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

# Values the model writes when it does not actually know a field.
_PLACEHOLDERS = frozenset({"", "unknown", "n/a", "none", "null", "tbd", "..."})


class ActionName(str, Enum):
    NONE = "none"
    COLLECT_INFO = "collect_info"
    SHOW_SERVICES = "show_services"
    SEND_OTP = "send_otp"
    VERIFY_OTP = "verify_otp"
    FETCH_SLOTS = "fetch_slots"
    CREATE_BOOKING = "create_booking"
    FETCH_BOOKINGS = "fetch_bookings"
    RESCHEDULE_BOOKING = "reschedule_booking"
    CANCEL_BOOKING = "cancel_booking"
    CREATE_PAYMENT = "create_payment"
    SEND_EMAIL = "send_email"
    HANDOFF_TO_AGENT = "handoff_to_agent"
    FALLBACK = "fallback"
    ERROR = "error"


# Actions the model may name but the backend does not implement.
UNSUPPORTED_ACTIONS = frozenset({
    ActionName.CREATE_PAYMENT,
    ActionName.SEND_EMAIL,
    ActionName.HANDOFF_TO_AGENT,
})

# Actions that only gather facts for the next model call.
LOOPING_ACTIONS = frozenset({ActionName.VERIFY_OTP, ActionName.FETCH_BOOKINGS})


# ── Intent envelope ─────────────────────────────────────────────────


class Intent(BaseModel):
    """The model's decision for one call."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    response_text: str = Field(
        default="", validation_alias=AliasChoices("response_text", "responseText"),
    )
    action: ActionName = ActionName.NONE
    action_payload: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("action_payload", "actionPayload"),
    )
    suggestions: list[str] = Field(default_factory=list)
    confidence: float = 1.0

    @field_validator("response_text", mode="before")
    @classmethod
    def check_text_or_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("action", mode="before")
    @classmethod
    def check_normalise_action(cls, value: Any) -> Any:
        if value is None:
            return ActionName.NONE
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("action_payload", mode="before")
    @classmethod
    def check_payload_or_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("suggestions", mode="before")
    @classmethod
    def check_trim_suggestions(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("suggestions must be a list")
        cleaned = [str(s).strip() for s in value if s is not None and str(s).strip()]
        return cleaned[:MAX_SUGGESTIONS]

    @field_validator("confidence", mode="before")
    @classmethod
    def check_clamp_confidence(cls, value: Any) -> Any:
        if value is None:
            return 1.0
        value = float(value)
        if not math.isfinite(value):
            raise ValueError("confidence must be a finite number")
        return min(max(value, 0.0), 1.0)


# ── Canned intents for failures ─────────────────────────────────────

MALFORMED_REPLY_TEXT = (
    "I'm having trouble processing that request. Could you try again?"
)
EMPTY_REPLY_TEXT = "I didn't get a response just now. Could you say that again?"
PROVIDER_ERROR_TEXT = (
    "I'm currently experiencing high traffic. Please try again in a moment."
)
UNSUPPORTED_ACTION_TEXT = (
    "I can't do that here yet. I can help with bookings, cancellations, "
    "reschedules, or availability."
)


def fallback_intent(
    text: str = MALFORMED_REPLY_TEXT, suggestions: list[str] | None = None,
) -> Intent:
    return Intent(
        response_text=text,
        action=ActionName.FALLBACK,
        suggestions=suggestions if suggestions is not None else ["Start Over"],
        confidence=0.0,
    )


def empty_reply_intent() -> Intent:
    return fallback_intent(EMPTY_REPLY_TEXT, ["Retry", "Start Over"])


def error_intent() -> Intent:
    return Intent(
        response_text=PROVIDER_ERROR_TEXT,
        action=ActionName.ERROR,
        suggestions=["Retry"],
        confidence=0.0,
    )


# ── Action payloads ─────────────────────────────────────────────────


def _require_value(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if isinstance(value, str) and value.strip().lower() in _PLACEHOLDERS:
        raise ValueError("value is missing")
    return value


def _pick_time(data: dict[str, Any]) -> dict[str, Any]:
    """Accept ``time`` or ``slot_id`` for the slot field."""
    if not data.get("time") and data.get("slot_id"):
        data["time"] = data["slot_id"]
    return data


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class EmptyPayload(_Payload):
    pass


class CollectInfoPayload(_Payload):
    required: list[str] = Field(default_factory=list)

    @field_validator("required", mode="before")
    @classmethod
    def check_required(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class SendOtpPayload(_Payload):
    phone: str
    method: str = "sms"

    @field_validator("phone", mode="before")
    @classmethod
    def check_phone(cls, value: Any) -> Any:
        value = _require_value(value)
        if isinstance(value, str):
            normalized = normalize_phone(value)
            if len(normalized.lstrip("+")) < 3:
                raise ValueError("phone number is too short")
            return normalized
        return value


class VerifyOtpPayload(SendOtpPayload):
    otp: str

    @field_validator("otp", mode="before")
    @classmethod
    def check_otp(cls, value: Any) -> Any:
        return _require_value(value)


class FetchSlotsPayload(_Payload):
    service_id: str
    date: dt.date

    @field_validator("service_id", mode="before")
    @classmethod
    def check_service(cls, value: Any) -> Any:
        return _require_value(value)


class FetchBookingsPayload(_Payload):
    email: str

    @model_validator(mode="before")
    @classmethod
    def check_needs_email(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("needs_email"):
            data = {k: v for k, v in data.items() if k != "email"}
        return data

    @field_validator("email", mode="before")
    @classmethod
    def check_email(cls, value: Any) -> Any:
        return _require_value(value)


class _SlotPayload(_Payload):
    date: dt.date
    time: str

    @model_validator(mode="before")
    @classmethod
    def check_slot_alias(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return _pick_time(dict(data))
        return data

    @field_validator("time", mode="before")
    @classmethod
    def check_time(cls, value: Any) -> Any:
        value = _require_value(value)
        if isinstance(value, str):
            normalized = normalize_slot_time(value)
            if normalized is None:
                raise ValueError(f"{value!r} is not a valid time")
            return normalized
        return value


class CreateBookingPayload(_SlotPayload):
    service_id: str
    name: str
    email: str
    phone: str
    idempotency_key: str | None = None

    @model_validator(mode="before")
    @classmethod
    def check_flatten_user(cls, data: Any) -> Any:
        """The model may nest user fields under ``user`` or ``user_details``."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("user", "user_details", "userDetails"):
            nested = data.get(key)
            if isinstance(nested, dict):
                for field in ("name", "email", "phone"):
                    data.setdefault(field, nested.get(field))
        return data

    @field_validator("service_id", "name", "phone", mode="before")
    @classmethod
    def check_present(cls, value: Any) -> Any:
        return _require_value(value)

    @field_validator("email", mode="before")
    @classmethod
    def check_email(cls, value: Any) -> Any:
        value = _require_value(value)
        if isinstance(value, str) and not _EMAIL_RE.match(value.strip()):
            raise ValueError(f"{value!r} does not look like a valid email address")
        return value


class RescheduleBookingPayload(_SlotPayload):
    booking_id: str

    @field_validator("booking_id", mode="before")
    @classmethod
    def check_booking(cls, value: Any) -> Any:
        return _require_value(value)


class CancelBookingPayload(_Payload):
    booking_id: str
    reason: str | None = None

    @field_validator("booking_id", mode="before")
    @classmethod
    def check_booking(cls, value: Any) -> Any:
        return _require_value(value)


PAYLOAD_MODELS: dict[ActionName, type[_Payload]] = {
    ActionName.NONE: EmptyPayload,
    ActionName.COLLECT_INFO: CollectInfoPayload,
    ActionName.SHOW_SERVICES: EmptyPayload,
    ActionName.SEND_OTP: SendOtpPayload,
    ActionName.VERIFY_OTP: VerifyOtpPayload,
    ActionName.FETCH_SLOTS: FetchSlotsPayload,
    ActionName.CREATE_BOOKING: CreateBookingPayload,
    ActionName.FETCH_BOOKINGS: FetchBookingsPayload,
    ActionName.RESCHEDULE_BOOKING: RescheduleBookingPayload,
    ActionName.CANCEL_BOOKING: CancelBookingPayload,
}


def parse_payload(action: ActionName, payload: dict[str, Any]) -> _Payload:
    """Validate *payload* for *action*.

    Raises:
        ValidationError: required fields are absent or malformed.
        KeyError: *action* has no payload schema (unsupported or terminal).
    """
    return PAYLOAD_MODELS[action].model_validate(payload)


def missing_fields(exc: ValidationError) -> list[str]:
    """Field names named by a payload ``ValidationError``, in order."""
    fields: list[str] = []
    for error in exc.errors():
        loc = error.get("loc") or ("payload",)
        name = str(loc[0])
        if name not in fields:
            fields.append(name)
    return fields
