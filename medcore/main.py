"""CLI entry point for the MedCore booking assistant.

This provides a simple terminal-based chat interface for testing and
development. For production, use the FastAPI server (medcore/server.py).

Usage:
    uv run python -m medcore.main            # normal mode (quiet)
    uv run python -m medcore.main --debug    # debug mode (shows model calls)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from dotenv import load_dotenv

from medcore.executor import ActionExecutor
from medcore.models import ChatMessage, MessageType
from medcore.orchestrator import SessionManager, TurnOrchestrator
from medcore.services.booking_store import BookingStore
from medcore.translator import IntentTranslator

logger = logging.getLogger(__name__)

BOT_NAME = "MedCore"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("medcore").setLevel(logging.DEBUG if debug else logging.WARNING)


def render_message(message: ChatMessage) -> str:
    """Render one assistant message as plain terminal text."""
    lines = [f"{BOT_NAME}: {message.text}"] if message.text else []
    payload = message.payload or {}

    if message.message_type is MessageType.SERVICE_CAROUSEL:
        for s in payload.get("services", []):
            lines.append(f"   [{s['id']}] {s['name']} ({s['duration_minutes']} min, ${s['price']:g})")
    elif message.message_type is MessageType.TIME_PICKER:
        times = [s["time"] for s in payload.get("slots", []) if s.get("available")]
        lines.append(f"   Slots on {payload.get('date')}: " + (", ".join(times) or "none"))
    elif message.message_type is MessageType.OTP_INPUT:
        lines.append(f"   (enter the code sent to {payload.get('phone')})")
    elif message.message_type is MessageType.CONFIRMATION:
        b = payload.get("booking", {})
        lines.append(
            f"   Booking {b.get('id')}: {b.get('service_name')} on {b.get('date')} "
            f"at {b.get('time')} [{b.get('status')}]"
        )

    if message.quick_replies:
        lines.append("   > " + " | ".join(message.quick_replies))
    return "\n".join(lines)


def _print_messages(messages: list[ChatMessage]) -> None:
    for message in messages:
        print(f"\n{render_message(message)}")
    print()


async def chat_loop() -> None:
    store = BookingStore()
    sessions = SessionManager(TurnOrchestrator(IntentTranslator(), ActionExecutor(store)))
    session_id = str(uuid.uuid4())
    logger.info("Started new session: %s", session_id)
    _print_messages(await sessions.start(session_id))

    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Take care.")
            break

        if user_input.lower() == "new":
            await sessions.reset(session_id)
            session_id = str(uuid.uuid4())
            print(f"\n>> New session started: {session_id[:8]}...")
            _print_messages(await sessions.start(session_id))
            continue

        _print_messages(await sessions.handle(session_id, user_input))


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="MedCore booking assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including model calls",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  MedCore Booking Assistant - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(chat_loop())
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()
