"""Action Executor: one validated intent in, at most one store effect out.

Each handler wraps a ``BookingStore`` operation and returns an
``ActionResult`` carrying the fresh facts for the next model call, the
structured payload for the chat widget, and (when the action failed) the
backend's own wording to show instead of the model's text.

Payloads are validated before anything touches the store.  A payload with
missing or malformed fields is not an error: the result lists the missing
fields so the orchestrator can ask for them.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from medcore.intents import (
    LOOPING_ACTIONS,
    UNSUPPORTED_ACTION_TEXT,
    UNSUPPORTED_ACTIONS,
    ActionName,
    CancelBookingPayload,
    CreateBookingPayload,
    FetchBookingsPayload,
    FetchSlotsPayload,
    Intent,
    RescheduleBookingPayload,
    SendOtpPayload,
    VerifyOtpPayload,
    missing_fields,
    parse_payload,
)
from medcore.models import (
    Booking,
    BookingDraft,
    FreshFacts,
    MessageType,
    TimeSlot,
    UserDetails,
)
from medcore.services.booking_store import (
    BookingStore,
    InvalidTransitionError,
    ServiceNotFoundError,
    SlotUnavailableError,
)
from medcore.services.metrics import metrics
from medcore.utils import redact_pii

logger = logging.getLogger(__name__)

_FIELD_LABELS = {
    "phone": "phone number",
    "otp": "verification code",
    "service_id": "service",
    "booking_id": "booking reference",
    "date": "date",
    "time": "time slot",
    "email": "email address",
    "name": "full name",
    # Payload-level errors carry no field name.
    "required": "details",
    "payload": "details",
}

_ACTION_PURPOSE = {
    ActionName.SEND_OTP: "send your verification code",
    ActionName.VERIFY_OTP: "check your code",
    ActionName.FETCH_SLOTS: "look up availability",
    ActionName.CREATE_BOOKING: "complete the booking",
    ActionName.FETCH_BOOKINGS: "find your bookings",
    ActionName.RESCHEDULE_BOOKING: "reschedule",
    ActionName.CANCEL_BOOKING: "cancel",
}


@dataclass
class ActionResult:
    """Outcome of one executed action."""

    action: ActionName
    outcome: str = "ok"
    facts: FreshFacts = field(default_factory=FreshFacts)
    message_type: MessageType = MessageType.TEXT
    payload: dict[str, Any] | None = None
    # Backend wording that replaces the model's text when the action failed.
    text_override: str | None = None
    suggestions: list[str] | None = None
    # Short status line shown even when the model's text is not.
    notice: str | None = None
    verified_phone: str | None = None

    @property
    def loops(self) -> bool:
        """True when the result must go back to the model before yielding."""
        return self.action in LOOPING_ACTIONS and self.outcome == "ok"


def reprompt_text(action: ActionName, fields: list[str]) -> str:
    """Deterministic request for the fields a payload was missing."""
    labels = [_FIELD_LABELS.get(f, f.replace("_", " ")) for f in fields] or ["details"]
    if len(labels) > 1:
        wanted = ", ".join(labels[:-1]) + f" and {labels[-1]}"
    else:
        wanted = labels[0]
    purpose = _ACTION_PURPOSE.get(action, "continue")
    return f"I still need your {wanted} to {purpose}."


def derive_idempotency_key(session_id: str, payload: CreateBookingPayload) -> str:
    """Stable booking key, scoped to *session_id*.

    A key supplied in the payload is hashed together with the session so two
    sessions can never share one.  Without a key the request fields are used.
    """
    if payload.idempotency_key:
        raw = f"{session_id}:{payload.idempotency_key}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]
    raw = "|".join([
        session_id,
        payload.service_id,
        payload.date.isoformat(),
        payload.time,
        payload.email.lower(),
    ])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


def _dump_slots(slots: list[TimeSlot]) -> list[dict[str, Any]]:
    return [s.model_dump(mode="json") for s in slots]


def _dump_booking(booking: Booking) -> dict[str, Any]:
    return booking.model_dump(mode="json", exclude={"idempotency_key"})


Handler = Callable[[Any, str], Awaitable[ActionResult]]


class ActionExecutor:
    """Maps an ``Intent`` to exactly one ``BookingStore`` operation."""

    def __init__(self, store: BookingStore):
        self._store = store
        self._handlers: dict[ActionName, Handler] = {
            ActionName.SHOW_SERVICES: self._show_services,
            ActionName.SEND_OTP: self._send_otp,
            ActionName.VERIFY_OTP: self._verify_otp,
            ActionName.FETCH_SLOTS: self._fetch_slots,
            ActionName.CREATE_BOOKING: self._create_booking,
            ActionName.FETCH_BOOKINGS: self._fetch_bookings,
            ActionName.RESCHEDULE_BOOKING: self._reschedule_booking,
            ActionName.CANCEL_BOOKING: self._cancel_booking,
        }

    async def execute(self, intent: Intent, *, session_id: str = "") -> ActionResult:
        """Validate *intent* and perform its effect, if any."""
        action = intent.action

        if action in UNSUPPORTED_ACTIONS:
            logger.info("Action %s is not implemented; degrading to fallback", action.value)
            metrics.record_action(action.value, "unsupported")
            return ActionResult(
                action=ActionName.FALLBACK,
                outcome="unsupported",
                text_override=UNSUPPORTED_ACTION_TEXT,
                suggestions=["Book appointment", "View bookings"],
            )

        if action in (ActionName.FALLBACK, ActionName.ERROR):
            return ActionResult(action=action, outcome="noop")

        try:
            payload = parse_payload(action, intent.action_payload)
        except ValidationError as exc:
            fields = missing_fields(exc)
            logger.info("Action %s missing fields: %s", action.value, fields)
            metrics.record_action(action.value, "invalid")
            return ActionResult(
                action=action,
                outcome="invalid",
                facts=FreshFacts(missing_fields=fields),
                text_override=reprompt_text(action, fields),
            )

        handler = self._handlers.get(action)
        if handler is None:
            # none / collect_info: informational only.
            metrics.record_action(action.value, "ok")
            if action is ActionName.COLLECT_INFO and payload.required:
                return ActionResult(
                    action=action, facts=FreshFacts(missing_fields=list(payload.required)),
                )
            return ActionResult(action=action)

        t0 = time.perf_counter()
        try:
            result = await handler(payload, session_id)
        except Exception as exc:
            metrics.record_failure(
                "booking_store", action.value,
                error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        metrics.record_success(
            "booking_store", action.value, latency_ms=(time.perf_counter() - t0) * 1000,
        )
        metrics.record_action(action.value, result.outcome)
        return result

    # ── Catalog & availability ───────────────────────────────────────

    async def _services_result(self, action: ActionName, outcome: str, text: str | None) -> ActionResult:
        services = await self._store.list_services()
        return ActionResult(
            action=action,
            outcome=outcome,
            facts=FreshFacts(
                services=services,
                failure_reason=text if outcome != "ok" else None,
            ),
            message_type=MessageType.SERVICE_CAROUSEL,
            payload={"services": [s.model_dump(mode="json") for s in services]},
            text_override=text,
        )

    async def _show_services(self, payload: Any, session_id: str) -> ActionResult:
        return await self._services_result(ActionName.SHOW_SERVICES, "ok", None)

    async def _slots_result(
        self,
        action: ActionName,
        service_id: str,
        date: dt.date,
        *,
        outcome: str = "ok",
        text: str | None = None,
    ) -> ActionResult:
        slots = await self._store.get_availability(date, service_id)
        if not slots and text is None:
            text = (
                f"There are no open slots on {date.strftime('%a %d %b %Y')}. "
                "Would you like to try another date?"
            )
        return ActionResult(
            action=action,
            outcome=outcome,
            facts=FreshFacts(
                slots=slots,
                slots_for={"service_id": service_id, "date": date.isoformat()},
                slot_unavailable=True if outcome == "conflict" else None,
            ),
            message_type=MessageType.TIME_PICKER,
            payload={
                "service_id": service_id,
                "date": date.isoformat(),
                "slots": _dump_slots(slots),
            },
            text_override=text,
        )

    async def _fetch_slots(self, payload: FetchSlotsPayload, session_id: str) -> ActionResult:
        try:
            return await self._slots_result(ActionName.FETCH_SLOTS, payload.service_id, payload.date)
        except ServiceNotFoundError:
            return await self._services_result(
                ActionName.FETCH_SLOTS,
                "not_found",
                "I couldn't find that service. Here's what we offer.",
            )

    # ── Verification ─────────────────────────────────────────────────

    async def _send_otp(self, payload: SendOtpPayload, session_id: str) -> ActionResult:
        await self._store.issue_otp(payload.phone)
        return ActionResult(
            action=ActionName.SEND_OTP,
            message_type=MessageType.OTP_INPUT,
            payload={"phone": payload.phone},
        )

    async def _verify_otp(self, payload: VerifyOtpPayload, session_id: str) -> ActionResult:
        verified = await self._store.verify_otp(payload.phone, payload.otp)
        logger.info(
            "[%s] OTP verification for %s: %s",
            session_id, redact_pii(payload.phone), "success" if verified else "failed",
        )
        return ActionResult(
            action=ActionName.VERIFY_OTP,
            facts=FreshFacts(verification_result=verified),
            notice="Verified! ✅" if verified else "Incorrect code. Please try again.",
            verified_phone=payload.phone if verified else None,
        )

    # ── Bookings ─────────────────────────────────────────────────────

    async def _create_booking(self, payload: CreateBookingPayload, session_id: str) -> ActionResult:
        key = derive_idempotency_key(session_id, payload)
        draft = BookingDraft(
            service_id=payload.service_id,
            date=payload.date,
            time=payload.time,
            user_details=UserDetails(name=payload.name, email=payload.email, phone=payload.phone),
        )
        try:
            booking = await self._store.create_booking(draft, idempotency_key=key)
        except ServiceNotFoundError:
            return await self._services_result(
                ActionName.CREATE_BOOKING,
                "not_found",
                "I couldn't find that service. Please pick one of these.",
            )
        except SlotUnavailableError:
            return await self._slots_result(
                ActionName.CREATE_BOOKING,
                payload.service_id,
                payload.date,
                outcome="conflict",
                text=f"Sorry, {payload.time} on {payload.date.isoformat()} is not available. "
                "Here are the open times.",
            )

        return ActionResult(
            action=ActionName.CREATE_BOOKING,
            facts=FreshFacts(booking=booking),
            message_type=MessageType.CONFIRMATION,
            payload={"booking": _dump_booking(booking)},
        )

    async def _fetch_bookings(self, payload: FetchBookingsPayload, session_id: str) -> ActionResult:
        bookings = await self._store.find_bookings(payload.email)
        logger.info(
            "[%s] %d booking(s) found for %s",
            session_id, len(bookings), redact_pii(payload.email),
        )
        return ActionResult(
            action=ActionName.FETCH_BOOKINGS,
            facts=FreshFacts(bookings=bookings),
        )

    async def _reschedule_booking(
        self, payload: RescheduleBookingPayload, session_id: str,
    ) -> ActionResult:
        try:
            booking = await self._store.reschedule_booking(
                payload.booking_id, payload.date, payload.time,
            )
        except InvalidTransitionError as exc:
            return ActionResult(
                action=ActionName.RESCHEDULE_BOOKING,
                outcome="invalid_transition",
                facts=FreshFacts(failure_reason=str(exc)),
                text_override=(
                    f"Booking {payload.booking_id} has been cancelled, so it can't be "
                    "rescheduled. Would you like to make a new booking?"
                ),
                suggestions=["Book appointment"],
            )
        except SlotUnavailableError:
            current = await self._store.get_booking(payload.booking_id)
            return await self._slots_result(
                ActionName.RESCHEDULE_BOOKING,
                current.service_id,
                payload.date,
                outcome="conflict",
                text=f"Sorry, {payload.time} on {payload.date.isoformat()} is not available. "
                "Here are the open times.",
            )

        if booking is None:
            return ActionResult(
                action=ActionName.RESCHEDULE_BOOKING,
                outcome="not_found",
                facts=FreshFacts(not_found=payload.booking_id),
                text_override=(
                    "Failed to reschedule. The booking might not exist. "
                    "Could you check the booking reference?"
                ),
                suggestions=["View bookings"],
            )

        return ActionResult(
            action=ActionName.RESCHEDULE_BOOKING,
            facts=FreshFacts(booking=booking),
            message_type=MessageType.CONFIRMATION,
            payload={"booking": _dump_booking(booking)},
        )

    async def _cancel_booking(self, payload: CancelBookingPayload, session_id: str) -> ActionResult:
        cancelled = await self._store.cancel_booking(payload.booking_id)
        if not cancelled:
            return ActionResult(
                action=ActionName.CANCEL_BOOKING,
                outcome="not_found",
                facts=FreshFacts(cancelled=False, not_found=payload.booking_id),
                text_override="Failed to cancel booking. It may not exist.",
                suggestions=["View bookings"],
            )

        booking = await self._store.get_booking(payload.booking_id)
        return ActionResult(
            action=ActionName.CANCEL_BOOKING,
            facts=FreshFacts(cancelled=True, booking=booking),
            payload={"booking_id": payload.booking_id, "status": "cancelled"},
            notice="Booking cancelled successfully.",
        )
