"""MedCore booking assistant: a chat front desk for a consulting clinic.

Architecture Overview
=====================

Every user message runs through a small **LangGraph** loop:

1. **translate** — Claude turns the recent conversation plus the latest
   backend facts into one JSON intent (an action name and its payload).
2. **execute** — the intent is validated and, if it names a real effect,
   performed against the booking store exactly once.
3. Fact-gathering actions (OTP verification, booking lookup) loop back to
   the model with the result; everything else is rendered and the turn ends.

Key Design Decisions
--------------------
- **The backend owns state**: verification results, availability and booking
  status reach the model only as ``System:`` facts.  Status claims the
  session has not observed are stripped before execution.
- **Closed action set**: unknown action names and malformed JSON degrade to
  a fallback message; nothing raw from the model reaches the store.
- **Idempotent writes**: booking creation is keyed so a replayed turn never
  books twice; the store serialises writes behind one lock.
- **Single-flight sessions**: a session processes one turn at a time; a reset
  cancels the turn in flight.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development).

Package Structure
-----------------
- ``medcore/orchestrator.py`` — LangGraph turn loop and session manager
- ``medcore/translator.py`` — model call, reply parsing and status guard
- ``medcore/executor.py`` — intent → booking store operation
- ``medcore/intents.py`` — action names, intent and payload schemas
- ``medcore/models.py`` — domain records
- ``medcore/prompts.py`` — instruction block and history rendering
- ``medcore/config.py`` — configuration from environment variables / SSM
- ``medcore/server.py`` — FastAPI application
- ``medcore/main.py`` — CLI chat interface
- ``medcore/services/`` — booking store, admin reporting, metrics
- ``medcore/api/`` — FastAPI routes and Pydantic schemas
"""
