"""Turn Orchestrator: the dialogue control loop.

One user utterance (or a session bootstrap) runs through a LangGraph
StateGraph with three nodes:

    1. **translate**  — ask the Intent Translator for the next intent, then
                        apply the status guard against the session ledger
    2. **execute**    — hand the intent to the Action Executor
    3. **loop_guard** — end a turn that kept looping without yielding

  Routing:
    translate → execute → (fact-gathering action?) → translate (loop)
                        → (loop budget spent?)      → loop_guard → END
                        → (anything else)           → END

  ``verify_otp`` and ``fetch_bookings`` only gather facts for the model, so
  their result is appended as a SYSTEM turn and the graph loops without
  showing the model's text.  Every other action renders a message and ends
  the turn.

  Memory:
    The graph runs without a checkpointer.  Each ``Session`` owns its
    history, ledger and pending facts; the graph only sees a snapshot and
    returns the turns it produced, which are committed once the turn
    completes.  A turn cancelled by ``SessionManager.reset`` commits nothing.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import operator
from dataclasses import dataclass, field
from typing import Annotated, Any

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from medcore.config import MAX_TOOL_LOOPS
from medcore.executor import ActionExecutor, ActionResult
from medcore.intents import ActionName, Intent
from medcore.models import (
    ChatMessage,
    ConversationTurn,
    FreshFacts,
    Role,
)
from medcore.prompts import fact_lines
from medcore.services.metrics import metrics
from medcore.translator import IntentTranslator, StatusLedger, guard_intent
from medcore.utils import redact_pii

logger = logging.getLogger(__name__)

APOLOGY_TEXT = "Sorry, I encountered a connection error. Please try again."
LOOP_CAP_TEXT = (
    "I'm having trouble completing that request. "
    "Could you tell me again what you'd like to do?"
)


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict, total=False):
    """The state that flows through the graph for one turn.

    ``history`` is the committed session history plus the user's turn and
    is never modified.  Nodes append to ``new_turns`` and ``messages``
    through the ``operator.add`` reducer.
    """

    session_id: str
    history: list[ConversationTurn]
    new_turns: Annotated[list[ConversationTurn], operator.add]
    messages: Annotated[list[ChatMessage], operator.add]
    ledger: StatusLedger
    facts: FreshFacts | None
    intent: Intent | None
    result: ActionResult | None
    loops: int


@dataclass
class TurnResult:
    """What one completed turn adds to its session."""

    messages: list[ChatMessage]
    turns: list[ConversationTurn]
    facts: FreshFacts | None = None


# ── Rendering helpers ───────────────────────────────────────────────


def _system_turn(result: ActionResult) -> ConversationTurn:
    return ConversationTurn(
        role=Role.SYSTEM,
        text=" ".join(fact_lines(result.facts)),
        action=result.action.value,
    )


def _final_message(intent: Intent, result: ActionResult) -> ChatMessage:
    text = result.text_override or intent.response_text
    suggestions = result.suggestions if result.suggestions is not None else intent.suggestions
    return ChatMessage(
        text=text,
        message_type=result.message_type,
        payload=result.payload,
        quick_replies=list(suggestions),
    )


# ── Graph assembly ───────────────────────────────────────────────────


def _make_translate_node(translator: IntentTranslator):
    async def translate_node(state: TurnState) -> dict:
        """Ask the model for the next intent and check it against the ledger."""
        turns = state["history"] + state.get("new_turns", [])
        intent = await translator.translate(turns, state.get("facts"))
        guarded = guard_intent(intent, state["ledger"])
        logger.debug(
            "[%s] translate: action=%s confidence=%.2f",
            state["session_id"], guarded.action.value, guarded.confidence,
        )
        return {"intent": guarded}

    return translate_node


def _make_execute_node(executor: ActionExecutor):
    async def execute_node(state: TurnState) -> dict:
        """Run the intent's effect and render or feed back its result."""
        intent = state["intent"]
        result = await executor.execute(intent, session_id=state["session_id"])
        state["ledger"].observe(result.facts, phone=result.verified_phone)
        logger.info(
            "[%s] execute: action=%s outcome=%s",
            state["session_id"], result.action.value, result.outcome,
        )

        messages: list[ChatMessage] = []
        if result.notice:
            messages.append(ChatMessage(text=result.notice))

        if result.loops:
            return {
                "result": result,
                "facts": result.facts,
                "loops": state.get("loops", 0) + 1,
                "new_turns": [_system_turn(result)],
                "messages": messages,
            }

        message = _final_message(intent, result)
        messages.append(message)
        assistant_turn = ConversationTurn(
            role=Role.ASSISTANT,
            text=message.text,
            action=intent.action.value,
            payload=intent.action_payload or None,
        )
        return {
            "result": result,
            "facts": None if result.facts.is_empty() else result.facts,
            "new_turns": [assistant_turn],
            "messages": messages,
        }

    return execute_node


def _make_loop_guard_node(max_loops: int):
    def loop_guard_node(state: TurnState) -> dict:
        """Stop a turn that keeps gathering facts without answering."""
        result = state["result"]
        logger.warning(
            "[%s] %d consecutive %s passes without a reply; forcing fallback",
            state["session_id"], max_loops, result.action.value,
        )
        metrics.record_action(result.action.value, "loop_cap")
        return {
            "new_turns": [
                ConversationTurn(
                    role=Role.ASSISTANT, text=LOOP_CAP_TEXT, action=ActionName.FALLBACK.value,
                ),
            ],
            "messages": [ChatMessage(text=LOOP_CAP_TEXT, quick_replies=["Start Over"])],
        }

    return loop_guard_node


def _make_should_continue(max_loops: int):
    def should_continue(state: TurnState) -> str:
        """Loop back to the model after a fact-gathering action."""
        result = state.get("result")
        if result is None or not result.loops:
            return END
        if state.get("loops", 0) >= max_loops:
            return "loop_guard"
        return "translate"

    return should_continue


def create_turn_graph(
    translator: IntentTranslator, executor: ActionExecutor, *, max_loops: int = MAX_TOOL_LOOPS,
):
    """Build and compile the per-turn dialogue graph.

    Returns a compiled graph that can be invoked with:
        await graph.ainvoke({
            "session_id": "abc", "history": [...], "ledger": StatusLedger(),
            "facts": None, "loops": 0,
        })
    """
    graph = StateGraph(TurnState)

    graph.add_node("translate", _make_translate_node(translator))
    graph.add_node("execute", _make_execute_node(executor))
    graph.add_node("loop_guard", _make_loop_guard_node(max_loops))

    graph.set_entry_point("translate")
    graph.add_edge("translate", "execute")
    graph.add_conditional_edges(
        "execute",
        _make_should_continue(max_loops),
        {"translate": "translate", "loop_guard": "loop_guard", END: END},
    )
    graph.add_edge("loop_guard", END)

    compiled = graph.compile()
    logger.debug("Turn graph compiled (max_loops=%d)", max_loops)
    return compiled


class TurnOrchestrator:
    """Runs one turn through the graph and never lets an error escape."""

    def __init__(
        self,
        translator: IntentTranslator,
        executor: ActionExecutor,
        *,
        max_loops: int = MAX_TOOL_LOOPS,
    ):
        self._max_loops = max_loops
        self._graph = create_turn_graph(translator, executor, max_loops=max_loops)

    async def run_turn(
        self,
        session_id: str,
        history: list[ConversationTurn],
        ledger: StatusLedger,
        *,
        user_turn: ConversationTurn | None = None,
        facts: FreshFacts | None = None,
    ) -> TurnResult:
        """Process *user_turn* (or a bootstrap when ``None``) against *history*."""
        opening = [user_turn] if user_turn is not None else []
        state: TurnState = {
            "session_id": session_id,
            "history": list(history) + opening,
            "new_turns": [],
            "messages": [],
            "ledger": ledger,
            "facts": facts,
            "intent": None,
            "result": None,
            "loops": 0,
        }
        try:
            final = await self._graph.ainvoke(
                state, config={"recursion_limit": self._max_loops * 2 + 5},
            )
        except Exception:
            logger.exception("[%s] Turn failed; returning apology", session_id)
            return TurnResult(
                messages=[ChatMessage(text=APOLOGY_TEXT, quick_replies=["Retry"])],
                turns=opening + [
                    ConversationTurn(
                        role=Role.ASSISTANT, text=APOLOGY_TEXT, action=ActionName.ERROR.value,
                    ),
                ],
            )

        return TurnResult(
            messages=final.get("messages", []),
            turns=opening + final.get("new_turns", []),
            facts=final.get("facts"),
        )


# ── Sessions ─────────────────────────────────────────────────────────


@dataclass
class Session:
    """Conversation state for one chat session."""

    session_id: str
    history: list[ConversationTurn] = field(default_factory=list)
    transcript: list[ChatMessage] = field(default_factory=list)
    ledger: StatusLedger = field(default_factory=StatusLedger)
    pending_facts: FreshFacts | None = None
    created_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.UTC))
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def typing(self) -> bool:
        """True while a turn is running or queued for this session."""
        return self.lock.locked()

    def commit(self, result: TurnResult, user_message: ChatMessage | None = None) -> None:
        self.history.extend(result.turns)
        if user_message is not None:
            self.transcript.append(user_message)
        self.transcript.extend(result.messages)
        self.pending_facts = result.facts


class SessionManager:
    """Owns every live session and serialises turns within each one.

    Turns for the same session are queued behind a per-session lock and
    never interleave; different sessions run concurrently.
    """

    def __init__(self, orchestrator: TurnOrchestrator):
        self._orchestrator = orchestrator
        self._sessions: dict[str, Session] = {}

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(session_id=session_id)
            self._sessions[session_id] = session
            logger.info("[%s] Session created", session_id)
        return session

    def peek(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def start(self, session_id: str) -> list[ChatMessage]:
        """Produce the greeting for a new session.

        A session that already has history is left alone and yields nothing.
        """
        session = self.get(session_id)
        if session.history:
            return []
        return await self._run(session, None, None)

    async def handle(
        self,
        session_id: str,
        text: str,
        *,
        action: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> list[ChatMessage]:
        """Run one user utterance through the orchestrator.

        *action* and *payload* carry a UI-originated choice (for example
        ``select_service`` + ``{"service_id": "s1"}``) and are recorded on
        the user's turn.
        """
        session = self.get(session_id)
        user_turn = ConversationTurn(role=Role.USER, text=text, action=action, payload=payload)
        user_message = ChatMessage(role=Role.USER, text=text)
        logger.info(
            "[%s] User turn received (%d chars, action=%s): %s",
            session_id, len(text), action, redact_pii(text),
        )
        return await self._run(session, user_turn, user_message)

    async def reset(self, session_id: str) -> Session:
        """Drop a session and cancel its in-flight turn.

        Store effects that already completed stand; the cancelled turn's
        history is discarded.  Returns the fresh replacement session.
        """
        old = self._sessions.pop(session_id, None)
        if old is not None:
            old.closed = True
            if old.task is not None and not old.task.done():
                old.task.cancel()
                logger.info("[%s] In-flight turn cancelled by reset", session_id)
        logger.info("[%s] Session reset", session_id)
        return self.get(session_id)

    async def _run(
        self,
        session: Session,
        user_turn: ConversationTurn | None,
        user_message: ChatMessage | None,
    ) -> list[ChatMessage]:
        async with session.lock:
            if session.closed:
                return []
            task = asyncio.ensure_future(
                self._orchestrator.run_turn(
                    session.session_id,
                    session.history,
                    session.ledger,
                    user_turn=user_turn,
                    facts=session.pending_facts,
                )
            )
            session.task = task
            try:
                result = await task
            except asyncio.CancelledError:
                if session.closed:
                    return []
                raise
            finally:
                session.task = None

            if session.closed:
                return []
            session.commit(result, user_message)
            return result.messages
