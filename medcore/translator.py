"""Intent Translator: the adapter between the dialogue loop and the model.

One call in, one ``Intent`` out.  The translator renders the instruction
block, the bounded history and the fresh facts, sends them to the chat
model, and turns whatever comes back into a validated ``Intent``:

  - empty reply                    -> ``fallback`` ("didn't get a response")
  - non-JSON / schema violation    -> ``fallback`` ("trouble processing")
  - transport failure or timeout   -> ``error``    ("high traffic")

Malformed output is never retried against the model.  The translator has
no side effects beyond the model call itself.

``guard_intent`` is the last line of defence against hallucinated progress:
it strips status claims the session ledger cannot back and refuses a
booking for a phone that was never verified.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import ValidationError

from medcore.config import (
    ANTHROPIC_API_KEY,
    HISTORY_WINDOW,
    LLM_TIMEOUT_SECONDS,
    MODEL_MAX_TOKENS,
    MODEL_NAME,
    MODEL_TEMPERATURE,
)
from medcore.intents import (
    ActionName,
    Intent,
    empty_reply_intent,
    error_intent,
    fallback_intent,
)
from medcore.models import BookingStatus, ConversationTurn, FreshFacts, Service
from medcore.prompts import build_user_prompt, get_system_prompt
from medcore.services.booking_store import SERVICES
from medcore.services.metrics import metrics
from medcore.utils import normalize_phone

logger = logging.getLogger(__name__)

# Every action the model may emit.  ``error`` is produced locally only.
PROMPT_ACTIONS = [a.value for a in ActionName if a is not ActionName.ERROR]

STATUS_KEYS = (
    "status",
    "booking_status",
    "otp_status",
    "verification_status",
    "payment_status",
)

VERIFY_FIRST_TEXT = (
    "Before I can confirm a booking I need to verify your phone number "
    "with a one-time code."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


# ── Ground-truth ledger ─────────────────────────────────────────────


@dataclass
class StatusLedger:
    """What the backend has actually reported during this session."""

    verified_phones: set[str] = field(default_factory=set)
    last_verification: bool | None = None
    booking_statuses: dict[str, BookingStatus] = field(default_factory=dict)

    def observe(self, facts: FreshFacts, *, phone: str | None = None) -> None:
        """Fold one executor result into the ledger."""
        if facts.verification_result is not None:
            self.last_verification = facts.verification_result
            if facts.verification_result and phone:
                self.verified_phones.add(normalize_phone(phone))
        if facts.booking is not None:
            self.booking_statuses[facts.booking.id] = facts.booking.status
        for booking in facts.bookings or []:
            self.booking_statuses[booking.id] = booking.status

    def is_verified(self, phone: str | None) -> bool:
        if phone:
            return normalize_phone(phone) in self.verified_phones
        return bool(self.verified_phones)

    def known_statuses(self, booking_id: str | None = None) -> set[str]:
        """Statuses a claim may state.

        For a booking the ledger has seen, only its last observed status counts.
        """
        if booking_id and booking_id in self.booking_statuses:
            known = {self.booking_statuses[booking_id].value}
        else:
            known = {status.value for status in self.booking_statuses.values()}
        if self.last_verification is True:
            known.update({"verified", "success"})
        elif self.last_verification is False:
            known.update({"failed", "unverified"})
        return known


def _payload_phone(payload: dict[str, Any]) -> str | None:
    phone = payload.get("phone")
    if not phone:
        for key in ("user", "user_details", "userDetails"):
            nested = payload.get(key)
            if isinstance(nested, dict) and nested.get("phone"):
                phone = nested["phone"]
                break
    return str(phone) if phone else None


def guard_intent(intent: Intent, ledger: StatusLedger) -> Intent:
    """Neutralise claims in *intent* that the ledger does not back."""
    payload = dict(intent.action_payload)
    booking_id = payload.get("booking_id") or payload.get("bookingId")
    known = ledger.known_statuses(str(booking_id) if booking_id else None)
    stripped = [
        key for key in STATUS_KEYS
        if key in payload and str(payload[key]).strip().lower() not in known
    ]
    for key in stripped:
        logger.warning(
            "Dropping unbacked status claim %s=%r from %s intent",
            key, payload.pop(key), intent.action.value,
        )

    if intent.action is ActionName.CREATE_BOOKING and not ledger.is_verified(
        _payload_phone(payload)
    ):
        logger.warning("Model requested create_booking before phone verification")
        return Intent(
            response_text=VERIFY_FIRST_TEXT,
            action=ActionName.COLLECT_INFO,
            action_payload={"required": ["phone", "otp"]},
            suggestions=["Send code", "Change phone"],
            confidence=intent.confidence,
        )

    if stripped:
        return intent.model_copy(update={"action_payload": payload})
    return intent


# ── Reply parsing ───────────────────────────────────────────────────


def _response_text(response: Any) -> str:
    """Flatten a chat-model reply into plain text."""
    content = getattr(response, "content", response)
    if content is None:
        return ""
    if isinstance(content, list):
        return "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return str(content)


def _load_json_object(text: str) -> Any:
    """Parse *text* as JSON, tolerating code fences and surrounding prose."""
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])


def parse_intent(raw: str) -> Intent:
    """Turn a raw model reply into an ``Intent``; never raises."""
    text = (raw or "").strip()
    if not text:
        logger.warning("Model returned an empty reply")
        return empty_reply_intent()

    try:
        data = _load_json_object(text)
    except json.JSONDecodeError:
        logger.warning("Model reply is not JSON: %r", text[:200])
        return fallback_intent()

    if not isinstance(data, dict):
        logger.warning("Model reply is JSON but not an object: %r", text[:200])
        return fallback_intent()

    try:
        return Intent.model_validate(data)
    except ValidationError as exc:
        logger.warning("Model reply failed schema validation: %s", exc.errors())
        return fallback_intent()


# ── LLM builder ─────────────────────────────────────────────────────


def _build_llm() -> ChatAnthropic:
    """Build the chat model that produces intents (no tool bindings)."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=MODEL_TEMPERATURE,  # Low temperature for consistent JSON
        max_tokens=MODEL_MAX_TOKENS,
    )


class IntentTranslator:
    """Renders prompts, calls the model and validates its intent."""

    def __init__(
        self,
        llm: BaseChatModel | None = None,
        *,
        history_window: int = HISTORY_WINDOW,
        timeout_seconds: float = LLM_TIMEOUT_SECONDS,
        catalog: list[Service] | None = None,
    ):
        self._llm = llm if llm is not None else _build_llm()
        self._history_window = history_window
        self._timeout_seconds = timeout_seconds
        self._catalog = list(catalog) if catalog is not None else list(SERVICES)

    def build_messages(
        self, turns: list[ConversationTurn], facts: FreshFacts | None = None,
    ) -> list[SystemMessage | HumanMessage]:
        return [
            SystemMessage(content=get_system_prompt(self._catalog, PROMPT_ACTIONS)),
            HumanMessage(content=build_user_prompt(turns, facts, self._history_window)),
        ]

    async def translate(
        self, turns: list[ConversationTurn], facts: FreshFacts | None = None,
    ) -> Intent:
        """Ask the model for the next intent given *turns* and *facts*."""
        messages = self.build_messages(turns, facts)
        t0 = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._llm.ainvoke(messages), timeout=self._timeout_seconds,
            )
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "intent_translate",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.warning(
                "Model call failed after %.0fms (%s); returning error intent",
                elapsed, type(exc).__name__,
            )
            return error_intent()

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "intent_translate", latency_ms=elapsed)
        intent = parse_intent(_response_text(response))
        logger.debug(
            "Model replied in %.0fms: action=%s confidence=%.2f",
            elapsed, intent.action.value, intent.confidence,
        )
        return intent
