"""Prompt text for the MedCore booking assistant.

The model never calls tools itself.  It answers every call with one JSON
object naming an action; the backend executes it and reports the outcome
back as ``System:`` lines in the next prompt.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from medcore.models import ConversationTurn, FreshFacts, Role, Service

SYSTEM_PROMPT_TEMPLATE = """You are the transactional booking assistant for **MedCore Health**, a consulting-service clinic.
Always respond with JSON exactly matching the schema below.
Do not include any extra text, markdown, or commentary outside the JSON.
Do not call any real APIs yourself; output actions for the backend to execute.

## Current Date & Time
Today is **{current_date}** ({current_day_of_week}). The current time is **{current_time} UTC**.
Resolve relative dates like "tomorrow" or "next Monday" against today and always emit dates as YYYY-MM-DD.

## Service Catalog
{catalog}

## Schema
{{
  "response_text": "Human-readable reply to show in chat",
  "action": "{actions}",
  "action_payload": {{}},
  "suggestions": ["Quick reply 1", "Quick reply 2"],
  "confidence": 0.95
}}

## Rules
1. If required info (name, email, phone, service, date) is missing, set action "collect_info" with {{"required": [...]}}.
2. If the user asks what you offer, or wants to book without naming a service, set action "show_services". If the service is already named, do not show services again.
3. Before booking, verify the phone: action "send_otp" with {{"phone": "..."}}.
4. When the user gives a code, action "verify_otp" with {{"phone": "...", "otp": "..."}}.
5. Once verification SUCCESS is reported, or when the user picks a date, action "fetch_slots" with {{"service_id": "...", "date": "YYYY-MM-DD"}}.
6. When the user picks a slot, action "create_booking" with service_id, date, time (e.g. "10:00 AM"), name, email, phone.
7. To cancel or reschedule, first action "fetch_bookings" with {{"email": "..."}}; ask for the email if you do not have it.
8. Once the booking is identified, cancel with action "cancel_booking" {{"booking_id": "..."}}, or fetch slots for the new date and then action "reschedule_booking" {{"booking_id": "...", "date": "YYYY-MM-DD", "time": "..."}}.
9. Payments, emails and human handoff are not available; say so with action "fallback".
10. Keep suggestions to 2-4 short quick replies. Be concise.

## Status Rules
You must never assume the status of OTP verification, booking creation, rescheduling or cancellation.
Only the backend knows; it reports status on lines starting with "System:".
1. Reflect exactly the status the System lines give you. Never invent one.
2. Never proceed to the next stage unless a System line confirms the previous one.
3. If verification FAILED, ask the user to re-enter the code or resend it.
4. If a booking is reported as confirmed, offer the next options (view details, reschedule, cancel).
5. If a System line reports an error or a missing booking, explain it and ask how to proceed.
6. If System lines list missing fields, ask for exactly those fields with action "collect_info".
"""

FEW_SHOT_EXAMPLES = """## Examples

User: I want to book an appointment tomorrow morning.
Assistant:
{"response_text": "Sure! Which service would you like?", "action": "show_services", "action_payload": {}, "suggestions": ["General Consultation", "Telehealth Session"], "confidence": 0.92}

User: Book a General Consultation on 2025-12-05. Name Kavya, email kavya@mail.com, phone +919876543210
Assistant:
{"response_text": "Got it, Kavya. I'll verify your phone before showing available slots.", "action": "send_otp", "action_payload": {"phone": "+919876543210"}, "suggestions": ["Enter OTP", "Change phone"], "confidence": 0.97}

User: 482916
Assistant:
{"response_text": "Verifying your code...", "action": "verify_otp", "action_payload": {"phone": "+919876543210", "otp": "482916"}, "suggestions": [], "confidence": 0.96}

System: OTP Verification Result: SUCCESS
Assistant:
{"response_text": "You're verified! Here are the open slots for 5 December.", "action": "fetch_slots", "action_payload": {"service_id": "s1", "date": "2025-12-05"}, "suggestions": ["Morning", "Afternoon"], "confidence": 0.93}

User: I select the 02:00 PM slot.
Assistant:
{"response_text": "Booking 2:00 PM for you now.", "action": "create_booking", "action_payload": {"service_id": "s1", "date": "2025-12-05", "time": "02:00 PM", "name": "Kavya", "email": "kavya@mail.com", "phone": "+919876543210"}, "suggestions": ["View details", "Reschedule", "Cancel"], "confidence": 0.96}

User: I want to reschedule my appointment.
Assistant:
{"response_text": "Sure. What email did you use for the booking?", "action": "collect_info", "action_payload": {"required": ["email"]}, "suggestions": ["Enter email"], "confidence": 0.88}

User: test@mail.com
Assistant:
{"response_text": "Looking up bookings for test@mail.com.", "action": "fetch_bookings", "action_payload": {"email": "test@mail.com"}, "suggestions": [], "confidence": 0.93}

User: Tell me a joke.
Assistant:
{"response_text": "I can help with bookings, cancellations, reschedules, or availability. What would you like to do?", "action": "fallback", "action_payload": {}, "suggestions": ["Book appointment", "View bookings"], "confidence": 0.48}
"""

_ROLE_LABELS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
    Role.SYSTEM: "System",
}


def _format_catalog(services: list[Service]) -> str:
    if not services:
        return "(catalog unavailable)"
    return "\n".join(
        f"- {s.id}: {s.name} ({s.duration_minutes} min, ${s.price:g})" for s in services
    )


def get_system_prompt(services: list[Service], actions: list[str]) -> str:
    """Build the instruction block with today's date and the catalog injected."""
    now = datetime.now(UTC)
    prompt = SYSTEM_PROMPT_TEMPLATE.format(
        current_date=now.strftime("%d %B %Y"),
        current_day_of_week=now.strftime("%A"),
        current_time=now.strftime("%H:%M"),
        catalog=_format_catalog(services),
        actions="|".join(actions),
    )
    return f"{prompt}\n{FEW_SHOT_EXAMPLES}"


def _dump(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def render_history(turns: list[ConversationTurn], window: int) -> str:
    """Render the last *window* turns, oldest first.  Older turns are dropped."""
    recent = turns[-window:] if window > 0 else []
    lines = []
    for turn in recent:
        line = f"{_ROLE_LABELS[turn.role]}: {turn.text}".rstrip()
        if turn.action:
            line += f" [action={turn.action}]"
        if turn.payload:
            line += f" {_dump(turn.payload)}"
        lines.append(line)
    return "\n".join(lines)


def fact_lines(facts: FreshFacts | None) -> list[str]:
    """One plain sentence per fact in *facts*."""
    if facts is None or facts.is_empty():
        return []

    lines: list[str] = []
    if facts.services is not None:
        catalog = [
            {"id": s.id, "name": s.name, "price": s.price} for s in facts.services
        ]
        lines.append(f"Available Services: {_dump(catalog)}")
    if facts.slots is not None:
        scope = ""
        if facts.slots_for:
            scope = f" ({facts.slots_for.get('service_id')} on {facts.slots_for.get('date')})"
        times = [s.time for s in facts.slots if s.available]
        lines.append(f"Available Time Slots{scope}: {_dump(times)}")
    if facts.bookings is not None:
        found = [
            {
                "booking_id": b.id,
                "service": b.service_name,
                "date": b.date.isoformat(),
                "time": b.time,
                "status": b.status.value,
            }
            for b in facts.bookings
        ]
        lines.append(f"Found Bookings: {_dump(found)}")
    if facts.verification_result is not None:
        result = "SUCCESS" if facts.verification_result else "FAILED"
        lines.append(f"OTP Verification Result: {result}")
    if facts.booking is not None:
        b = facts.booking
        lines.append(
            f"Booking {b.id} status: {b.status.value} "
            f"({b.service_name} on {b.date.isoformat()} at {b.time})"
        )
    if facts.cancelled is not None:
        lines.append(
            f"Cancellation Result: {'SUCCESS' if facts.cancelled else 'FAILED'}"
        )
    if facts.not_found:
        lines.append(f"No booking found with id {facts.not_found}")
    if facts.missing_fields:
        lines.append(f"Missing required fields: {', '.join(facts.missing_fields)}")
    if facts.slot_unavailable:
        lines.append("The requested slot is not available. Offer the listed slots instead.")
    if facts.failure_reason:
        lines.append(f"Action failed: {facts.failure_reason}")
    return lines


def render_facts(facts: FreshFacts | None) -> str:
    """Render fresh facts as ``System:`` lines for the model."""
    return "\n".join(f"System: {line}" for line in fact_lines(facts))


def build_user_prompt(
    turns: list[ConversationTurn], facts: FreshFacts | None, window: int,
) -> str:
    """Conversation history + fresh facts, ending on the model's cue."""
    parts = ["Conversation History:", render_history(turns, window) or "(conversation start)"]
    rendered_facts = render_facts(facts)
    if rendered_facts:
        parts.append(rendered_facts)
    parts.append("\nAssistant:")
    return "\n".join(parts)
