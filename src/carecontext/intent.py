"""
Intent detection for incoming chat messages.

The generation model is asked for a one-field JSON object; when it is
unavailable or answers with something unparsable, a keyword classifier decides.
"""
from __future__ import annotations

import json
import re
from enum import Enum

from .errors import GenerationError
from .generation import GenerationClient
from .observability import get_logger

logger = get_logger(__name__)


class IntentType(str, Enum):
    POLICY_INFO = "POLICY_INFO"
    CLAIM_PROCESS = "CLAIM_PROCESS"
    CLAIM_STATUS = "CLAIM_STATUS"
    TALK_TO_AGENT = "TALK_TO_AGENT"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str | None) -> "IntentType":
        key = re.sub(r"[^A-Z]", "", str(value or "").upper())
        return _LABELS.get(key, cls.UNKNOWN)


# Labels are matched with separators stripped: "ClaimStatus", "CLAIM_STATUS" and "claim status" agree.
_LABELS = {re.sub(r"[^A-Z]", "", member.value): member for member in IntentType}

INTENT_PROMPT = """You classify messages sent to a health insurance support assistant.
Reply with JSON only, in the form {{"intent": "<label>"}}.
Labels:
- PolicyInfo: questions about coverage, benefits, exclusions, waiting periods or policy terms
- ClaimProcess: how to file a claim, required documents, cashless or reimbursement steps
- ClaimStatus: the status of an existing claim or ticket
- TalkToAgent: the user wants a human agent
- Unknown: anything else

Message: {message}
"""

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_JSON_OBJECT_RE = re.compile(r"\{.*?\}", re.DOTALL)

_AGENT_RE = re.compile(r"\b(human|agent|representative|real person|call me|talk to someone)\b", re.IGNORECASE)
_STATUS_RE = re.compile(
    r"\b(status|track|tracking|ticket)\b.*\bclaim\b|\bclaim\b.*\b(status|approved|rejected|pending|update)\b"
    r"|\bwhere is my claim\b",
    re.IGNORECASE,
)
_PROCESS_RE = re.compile(
    r"\b(file|submit|raise|make|lodge)\b.*\bclaim\b|\bclaim (process|procedure|form)\b"
    r"|\bhow (do|can) i claim\b|\b(cashless|reimbursement)\b",
    re.IGNORECASE,
)
_POLICY_RE = re.compile(
    r"\b(cover|covered|coverage|policy|premium|waiting period|exclusion|deductible|copay|benefit|"
    r"maternity|cataract|ayush|pre-existing|hospital|surgery|network)\b",
    re.IGNORECASE,
)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", str(text or "").strip()).strip()


def classify_by_keywords(message: str) -> IntentType:
    text = str(message or "")
    if _AGENT_RE.search(text):
        return IntentType.TALK_TO_AGENT
    if _STATUS_RE.search(text):
        return IntentType.CLAIM_STATUS
    if _PROCESS_RE.search(text):
        return IntentType.CLAIM_PROCESS
    if _POLICY_RE.search(text):
        return IntentType.POLICY_INFO
    return IntentType.UNKNOWN


def parse_intent_payload(raw: str) -> IntentType | None:
    """Returns None when the payload carries no usable intent field."""
    payload = strip_code_fences(raw)
    match = _JSON_OBJECT_RE.search(payload)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or "intent" not in data:
        return None
    return IntentType.parse(data.get("intent"))


class IntentClassifier:
    def __init__(self, generator: GenerationClient | None = None):
        self.generator = generator

    def detect(self, message: str) -> IntentType:
        text = str(message or "").strip()
        if not text:
            return IntentType.UNKNOWN
        if self.generator is None:
            return classify_by_keywords(text)

        try:
            raw = self.generator.generate(INTENT_PROMPT.format(message=text))
        except GenerationError as exc:
            logger.warning("intent_generation_failed", error=str(exc))
            return classify_by_keywords(text)

        intent = parse_intent_payload(raw)
        if intent is None:
            logger.info("intent_unparsable", raw=str(raw)[:200])
            return classify_by_keywords(text)
        return intent
