"""
Hybrid context assembly for one chat turn.

Decision order, each step able to short-circuit:
1. load recent history (or reuse the caller's copy)
2. frustration check over the latest run of user turns
3. "explain that again" -> replay the last ANSWER, no retrieval
4. pure follow-up with no new domain term -> history only
5. only policy and claim-process questions longer than a few characters
   retrieve; anything else is answered from history alone
6. retrieval; nothing above the floor -> low confidence
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Sequence

from .config import FRUSTRATION_THRESHOLD, MEMORY_CONTEXT_TURNS, MEMORY_HISTORY_LIMIT
from .conversation_memory import ConversationMemory
from .intent import IntentType
from .models import (
    MESSAGE_TYPE_ANSWER,
    ROLE_ASSISTANT,
    ROLE_USER,
    ContextRoute,
    ConversationMessage,
    HybridContextResult,
)
from .observability import get_logger
from .retriever import PolicyRetriever

logger = get_logger(__name__)

CONVERSATION_HEADER = "CONVERSATION CONTEXT:"
EXPLANATION_HEADER = "USER REQUESTS EXPLANATION OF:"
POLICY_HEADER = "POLICY CONTEXT:"

# Only these intents are answerable from policy documents.
RETRIEVAL_INTENTS = frozenset({IntentType.POLICY_INFO, IntentType.CLAIM_PROCESS})
MIN_RETRIEVAL_QUESTION_CHARS = 5

DOMAIN_TERMS = (
    "cataract", "surgery", "hospital", "ayush", "maternity", "pre-existing",
    "waiting period", "claim", "coverage", "policy", "insurance", "network",
    "cashless", "premium", "deductible", "copay", "exclusion", "reimbursement",
    "hospitalization",
)

FOLLOW_UP_RE = re.compile(
    r"\b(?:that|again|previous(?:ly)?|earlier|you said|clarify|mean(?:s|t)?|understand\w*|before)\b",
    re.IGNORECASE,
)

EXPLAIN_AGAIN_PATTERNS = (
    re.compile(r"\b(?:explain|say|repeat|rephrase)\s+(?:that|it|this)(?:\s+(?:again|once more|differently))?\b", re.IGNORECASE),
    re.compile(r"\brepeat\s+(?:yourself|your\s+(?:last\s+)?answer)\b", re.IGNORECASE),
    re.compile(r"\bexplain\s+(?:again|once more|more simply|in simpler terms)\b", re.IGNORECASE),
    re.compile(r"\b(?:one more time|come again)\b", re.IGNORECASE),
    re.compile(r"^\s*(?:again|say again|pardon)\s*[?.!]*\s*$", re.IGNORECASE),
)


def _marker_regex(markers: Sequence[str], *, whole_word: bool) -> re.Pattern | None:
    cleaned = [re.escape(m.strip()) for m in markers if m and m.strip()]
    if not cleaned:
        return None
    tail = r"s?\b" if whole_word else ""
    return re.compile(r"\b(?:" + "|".join(cleaned) + r")" + tail, re.IGNORECASE)


@dataclass(frozen=True)
class FrustrationPolicy:
    confusion_markers: tuple[str, ...] = ("understand", "not clear", "confused", "what do you mean")
    hard_markers: tuple[str, ...] = ("stupid", "useless", "broken", "agent", "ticket", "circular")
    threshold: int = FRUSTRATION_THRESHOLD

    @classmethod
    def legacy(cls) -> "FrustrationPolicy":
        """Marker set of the first chat release, where "mean" and "help" also counted as confusion."""
        return cls(
            confusion_markers=("understand", "not clear", "mean", "help", "confused", "no use"),
            hard_markers=(),
        )

    def is_confused(self, text: str) -> bool:
        pattern = _marker_regex(self.confusion_markers, whole_word=False)
        return bool(pattern and pattern.search(str(text or "")))

    def is_hard_frustration(self, text: str) -> bool:
        pattern = _marker_regex(self.hard_markers, whole_word=True)
        return bool(pattern and pattern.search(str(text or "")))

    def evaluate(self, question: str, history: Sequence[ConversationMessage]) -> bool:
        if self.is_hard_frustration(question):
            return True
        if not self.is_confused(question):
            return False

        turns = list(history)
        # The caller may have recorded the current question before building context.
        if turns and turns[-1].role == ROLE_USER and turns[-1].content.strip() == str(question).strip():
            turns = turns[:-1]

        run = 1
        for message in reversed(turns):
            if message.role != ROLE_USER:
                continue
            if not self.is_confused(message.content):
                break
            run += 1
            if run >= self.threshold:
                break
        return run >= self.threshold


def is_explain_again(question: str) -> bool:
    text = str(question or "")
    return any(pattern.search(text) for pattern in EXPLAIN_AGAIN_PATTERNS)


def contains_domain_term(question: str) -> bool:
    lowered = str(question or "").lower()
    return any(term in lowered for term in DOMAIN_TERMS)


def is_follow_up(question: str) -> bool:
    return bool(FOLLOW_UP_RE.search(str(question or "")))


def last_answer(history: Sequence[ConversationMessage]) -> ConversationMessage | None:
    for message in reversed(history):
        if message.role == ROLE_ASSISTANT and message.message_type == MESSAGE_TYPE_ANSWER:
            return message
    return None


class HybridContextEngine:
    def __init__(
        self,
        memory: ConversationMemory,
        retriever: PolicyRetriever,
        *,
        frustration_policy: FrustrationPolicy | None = None,
        history_limit: int = MEMORY_HISTORY_LIMIT,
        context_turns: int = MEMORY_CONTEXT_TURNS,
    ):
        self.memory = memory
        self.retriever = retriever
        self.frustration_policy = frustration_policy or FrustrationPolicy()
        self.history_limit = max(1, int(history_limit))
        self.context_turns = max(1, int(context_turns))

    def _conversation_section(self, history: Sequence[ConversationMessage]) -> list[str]:
        if not history:
            return []
        lines = [CONVERSATION_HEADER]
        lines.extend(f"{m.role}: {m.content}" for m in list(history)[-self.context_turns:])
        return lines

    def build_context(
        self,
        session_id: str,
        question: str,
        intent: IntentType | str = IntentType.UNKNOWN,
        history: Sequence[ConversationMessage] | None = None,
        filters: Mapping[str, str] | None = None,
    ) -> HybridContextResult:
        intent_type = intent if isinstance(intent, IntentType) else IntentType.parse(intent)
        if history is None:
            history = self.memory.get_last(session_id, self.history_limit)
        history = list(history)

        is_frustrated = self.frustration_policy.evaluate(question, history)
        lines = self._conversation_section(history)

        def _result(route: ContextRoute, **fields) -> HybridContextResult:
            logger.info(
                "context_built",
                session_id=session_id,
                route=route.value,
                intent=intent_type.value,
                frustrated=is_frustrated,
                low_confidence=bool(fields.get("is_low_confidence", False)),
                history=len(history),
            )
            return HybridContextResult(
                context_text="\n".join(lines).strip(),
                is_frustrated=is_frustrated,
                route=route,
                intent=intent_type.value,
                **fields,
            )

        if is_explain_again(question):
            answer = last_answer(history)
            if answer is not None:
                lines.extend(["", EXPLANATION_HEADER, answer.content])
                return _result(ContextRoute.EXPLAIN_AGAIN)

        if history and is_follow_up(question) and not contains_domain_term(question):
            return _result(ContextRoute.FOLLOW_UP)

        if intent_type not in RETRIEVAL_INTENTS or len(str(question or "").strip()) <= MIN_RETRIEVAL_QUESTION_CHARS:
            return _result(ContextRoute.NO_RETRIEVAL)

        retrieval = self.retriever.retrieve(session_id, question, filters)
        if not retrieval.found:
            return _result(ContextRoute.RETRIEVAL, is_low_confidence=True, confidence=0.0)

        lines.extend(["", POLICY_HEADER, retrieval.context_text])
        return _result(
            ContextRoute.RETRIEVAL,
            confidence=retrieval.confidence,
            sources=retrieval.sources,
        )
