"""Chat turn orchestration: intent -> context -> answer or handoff -> memory."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterator

from .config import MEMORY_HISTORY_LIMIT
from .context_engine import HybridContextEngine
from .conversation_memory import ConversationMemory
from .errors import GenerationError
from .generation import GenerationClient
from .intent import IntentClassifier
from .metrics import MetricsCollector
from .models import (
    MESSAGE_TYPE_ANSWER,
    MESSAGE_TYPE_QUESTION,
    ROLE_ASSISTANT,
    ROLE_USER,
    SOURCE_BOT,
    SOURCE_LLM,
    SOURCE_USER,
    SOURCE_VECTOR_RAG,
    ContextRoute,
    ConversationMessage,
    HybridContextResult,
)
from .observability import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """SYSTEM:
You are the customer support assistant inside a health insurance app.
IDENTITY RULES:
- Never describe yourself as an AI, a model or a chatbot.
- Never mention developers, companies, models or training data.

BEHAVIOR RULES:
- Speak professionally, politely and concisely, like a trained insurance support executive.
- Answer only from the policy context and the conversation below; do not invent benefits, limits or amounts.
- When quoting policy context, keep the [source] tag of the passage you used.
- Do not introduce yourself unless asked. Answer greetings with a short business greeting.

ALLOWED TOPICS: policy explanations, claim process guidance, claim status help, directing to human support.
If a question is outside scope, reply:
"I'm sorry, I'm here to help with health insurance questions. Could you tell me what you'd like to know?"
"""

HANDOFF_MESSAGES = {
    "frustration": (
        "I'm sorry this has been frustrating. I'm connecting you with a support specialist "
        "who will review your conversation and get back to you shortly."
    ),
    "low_confidence": (
        "I couldn't find this in your policy documents, so I don't want to guess. "
        "I've passed your question to a support specialist who will follow up with you."
    ),
}

GENERATION_FALLBACK = (
    "I'm having trouble answering right now. Please try again in a moment, "
    "or ask to speak with a support specialist."
)

# (session_id, reason, context) -> ticket id or None
EscalationHandler = Callable[[str, str, HybridContextResult], "str | None"]


@dataclass(frozen=True)
class ChatTurn:
    session_id: str
    answer: str
    intent: str
    route: str
    confidence: float = 0.0
    sources: tuple[str, ...] = ()
    escalated: bool = False
    escalation_reason: str = ""
    ticket_id: str = ""
    generated: bool = False


def build_prompt(context: HybridContextResult, question: str) -> str:
    sections = [SYSTEM_PROMPT.strip()]
    if context.context_text:
        sections.append(context.context_text)
    sections.append(f"USER QUESTION:\n{question}")
    sections.append("Answer as a human insurance support agent working inside the app would.")
    return "\n\n".join(sections)


class QueryProcessor:
    """
    Owns one chat turn end to end. The HTTP and CLI layers only do IO; history
    is loaded once here and handed to the context engine.
    """

    def __init__(
        self,
        *,
        memory: ConversationMemory,
        context_engine: HybridContextEngine,
        intent_classifier: IntentClassifier,
        generator: GenerationClient,
        metrics: MetricsCollector | None = None,
        escalation_handler: EscalationHandler | None = None,
        history_limit: int = MEMORY_HISTORY_LIMIT,
    ):
        self.memory = memory
        self.context_engine = context_engine
        self.intent_classifier = intent_classifier
        self.generator = generator
        self.metrics = metrics
        self.escalation_handler = escalation_handler
        self.history_limit = max(1, int(history_limit))

    def _prepare(self, session_id: str, message: str) -> HybridContextResult:
        intent = self.intent_classifier.detect(message)
        history = self.memory.get_last(session_id, self.history_limit)
        context = self.context_engine.build_context(session_id, message, intent, history=history)
        return context

    def _escalate(self, session_id: str, context: HybridContextResult) -> tuple[str, str]:
        reason = context.escalation_reason
        ticket_id = ""
        if self.escalation_handler is not None:
            try:
                ticket_id = str(self.escalation_handler(session_id, reason, context) or "")
            except Exception as exc:
                logger.error("escalation_handler_failed", session_id=session_id, reason=reason, error=str(exc))
        logger.info("chat_escalated", session_id=session_id, reason=reason, ticket_id=ticket_id)
        return HANDOFF_MESSAGES.get(reason, HANDOFF_MESSAGES["low_confidence"]), ticket_id

    def _record(
        self,
        session_id: str,
        question: str,
        answer: str,
        context: HybridContextResult,
        *,
        escalated: bool,
        ticket_id: str,
    ):
        if escalated:
            source = SOURCE_BOT
        elif context.route == ContextRoute.RETRIEVAL and not context.is_low_confidence:
            source = SOURCE_VECTOR_RAG
        else:
            source = SOURCE_LLM
        self.memory.append_many(
            [
                ConversationMessage(
                    session_id=session_id,
                    role=ROLE_USER,
                    content=question,
                    message_type=MESSAGE_TYPE_QUESTION,
                    intent=context.intent,
                    source=SOURCE_USER,
                ),
                ConversationMessage(
                    session_id=session_id,
                    role=ROLE_ASSISTANT,
                    content=answer,
                    message_type=MESSAGE_TYPE_ANSWER,
                    intent=context.intent,
                    source=source,
                    confidence=float(context.confidence),
                    ticket_id=ticket_id,
                ),
            ]
        )

    def _finish(
        self,
        session_id: str,
        question: str,
        answer: str,
        context: HybridContextResult,
        started: float,
        *,
        escalated: bool = False,
        ticket_id: str = "",
        generated: bool = False,
    ) -> ChatTurn:
        self._record(session_id, question, answer, context, escalated=escalated, ticket_id=ticket_id)
        latency_ms = (time.perf_counter() - started) * 1000.0
        if self.metrics is not None:
            self.metrics.record_turn(session_id, context, latency_ms, generation_ok=generated or escalated)
        return ChatTurn(
            session_id=session_id,
            answer=answer,
            intent=context.intent,
            route=context.route.value,
            confidence=context.confidence,
            sources=context.sources,
            escalated=escalated,
            escalation_reason=context.escalation_reason if escalated else "",
            ticket_id=ticket_id,
            generated=generated,
        )

    def process(self, session_id: str, message: str) -> ChatTurn:
        started = time.perf_counter()
        question = str(message or "").strip()
        if not question:
            raise ValueError("message is empty")

        context = self._prepare(session_id, question)
        if context.should_escalate:
            answer, ticket_id = self._escalate(session_id, context)
            return self._finish(session_id, question, answer, context, started, escalated=True, ticket_id=ticket_id)

        try:
            answer = self.generator.generate(build_prompt(context, question))
            generated = bool(answer)
        except GenerationError as exc:
            logger.warning("chat_generation_failed", session_id=session_id, error=str(exc))
            answer, generated = "", False
        return self._finish(session_id, question, answer or GENERATION_FALLBACK, context, started, generated=generated)

    def stream(self, session_id: str, message: str) -> Iterator[str]:
        """
        Yields answer tokens. The turn is recorded once the stream ends, including
        when the consumer stops early; a stream that fails before its first token
        yields the generic fallback answer instead.
        """
        started = time.perf_counter()
        question = str(message or "").strip()
        if not question:
            raise ValueError("message is empty")

        context = self._prepare(session_id, question)
        if context.should_escalate:
            answer, ticket_id = self._escalate(session_id, context)
            self._finish(session_id, question, answer, context, started, escalated=True, ticket_id=ticket_id)
            yield answer
            return

        parts: list[str] = []
        generated = False
        try:
            try:
                for token in self.generator.stream(build_prompt(context, question)):
                    parts.append(token)
                    yield token
                generated = bool(parts)
            except GenerationError as exc:
                logger.warning("chat_stream_failed", session_id=session_id, error=str(exc), tokens=len(parts))
                generated = bool(parts)
            if not parts:
                parts.append(GENERATION_FALLBACK)
                yield GENERATION_FALLBACK
        finally:
            answer = "".join(parts).strip() or GENERATION_FALLBACK
            self._finish(session_id, question, answer, context, started, generated=generated or bool(parts))
