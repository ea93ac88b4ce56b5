"""Shared test fixtures for the MedCore test suite."""

from __future__ import annotations

import json
import os
from unittest.mock import AsyncMock, MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("STORE_LATENCY_MS", "0")


def intent_json(action: str = "none", text: str = "", payload: dict | None = None, **extra) -> str:
    """Serialise a model reply the way the prompt asks for it."""
    body = {
        "response_text": text,
        "action": action,
        "action_payload": payload or {},
        "suggestions": extra.pop("suggestions", []),
        "confidence": extra.pop("confidence", 0.9),
    }
    body.update(extra)
    return json.dumps(body)


def scripted_llm(*replies):
    """A chat model stub whose ``ainvoke`` returns *replies* in order.

    Each reply may be a string (wrapped in an ``AIMessage``) or an
    exception instance, which is raised instead.
    """
    from langchain_core.messages import AIMessage

    effects = [r if isinstance(r, BaseException) else AIMessage(content=r) for r in replies]
    llm = MagicMock()
    llm.ainvoke = AsyncMock(side_effect=effects)
    return llm


@pytest.fixture
def store():
    """A seeded store with no latency and every base slot offered."""
    from medcore.services.booking_store import BookingStore

    return BookingStore(latency_ms=0, availability_ratio=1.0)
