import tempfile
import unittest
from pathlib import Path

from carecontext.context_engine import HybridContextEngine
from carecontext.conversation_memory import ConversationMemory, FallbackMessageBuffer
from carecontext.errors import GenerationError
from carecontext.intent import IntentClassifier
from carecontext.metrics import MetricsCollector
from carecontext.models import RetrievalResult
from carecontext.query_processor import (
    GENERATION_FALLBACK,
    HANDOFF_MESSAGES,
    QueryProcessor,
)

FOUND = RetrievalResult(
    context_text="[global/faq.txt] Cataract surgery is covered after a 24 month waiting period.",
    found=True,
    confidence=0.885,
    sources=("global/faq.txt",),
)


class _FakeRetriever:
    def __init__(self, result=FOUND):
        self.result = result
        self.calls = []

    def retrieve(self, session_or_user_id, query_text, filters=None):
        self.calls.append(query_text)
        return self.result


class _FakeGenerator:
    def __init__(self, answer="Cataract surgery is covered after 24 months.", tokens=None, error=None):
        self.answer = answer
        self.tokens = list(tokens or [])
        self.error = error
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.answer

    def stream(self, prompt):
        self.prompts.append(prompt)
        for token in self.tokens:
            yield token
        if self.error is not None:
            raise self.error


class TestQueryProcessor(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.memory = ConversationMemory(Path(self.tmp.name) / "memory.sqlite", FallbackMessageBuffer())
        self.retriever = _FakeRetriever()
        self.generator = _FakeGenerator()
        self.metrics = MetricsCollector()
        self.tickets = []
        self.processor = self._processor()

    def tearDown(self):
        self.memory.close()
        self.tmp.cleanup()

    def _processor(self, handler=None):
        def _default_handler(session_id, reason, context):
            self.tickets.append((session_id, reason))
            return "T-1"

        return QueryProcessor(
            memory=self.memory,
            context_engine=HybridContextEngine(self.memory, self.retriever),
            intent_classifier=IntentClassifier(None),
            generator=self.generator,
            metrics=self.metrics,
            escalation_handler=handler or _default_handler,
        )

    def test_answer_is_generated_and_recorded_as_a_pair(self):
        turn = self.processor.process("U101", "Is cataract surgery covered?")
        self.assertEqual(turn.answer, "Cataract surgery is covered after 24 months.")
        self.assertEqual(turn.intent, "POLICY_INFO")
        self.assertEqual(turn.route, "RETRIEVAL")
        self.assertEqual(turn.sources, ("global/faq.txt",))
        self.assertTrue(turn.generated)
        self.assertFalse(turn.escalated)

        prompt = self.generator.prompts[0]
        self.assertIn("POLICY CONTEXT:", prompt)
        self.assertIn("USER QUESTION:\nIs cataract surgery covered?", prompt)

        question, answer = self.memory.get_last("U101", 10)
        self.assertEqual((question.role, question.message_type, question.source), ("user", "QUESTION", "USER"))
        self.assertEqual((answer.role, answer.message_type, answer.source), ("assistant", "ANSWER", "VECTOR_RAG"))
        self.assertAlmostEqual(answer.confidence, 0.885)
        self.assertLess(question.timestamp_ms, answer.timestamp_ms)

    def test_low_confidence_escalates_without_generation(self):
        self.retriever.result = RetrievalResult.not_found()
        turn = self.processor.process("U101", "Is dental cleaning covered?")
        self.assertTrue(turn.escalated)
        self.assertEqual(turn.escalation_reason, "low_confidence")
        self.assertEqual(turn.ticket_id, "T-1")
        self.assertEqual(turn.answer, HANDOFF_MESSAGES["low_confidence"])
        self.assertEqual(self.generator.prompts, [])
        self.assertEqual(self.tickets, [("U101", "low_confidence")])

        answer = self.memory.get_last("U101", 1)[0]
        self.assertEqual(answer.source, "BOT")
        self.assertEqual(answer.ticket_id, "T-1")

    def test_small_talk_is_answered_without_retrieval_or_handoff(self):
        self.retriever.result = RetrievalResult.not_found()
        self.generator.answer = "Hello! How can I help with your policy today?"
        turn = self.processor.process("U101", "hello there")
        self.assertEqual(turn.intent, "UNKNOWN")
        self.assertEqual(turn.route, "NO_RETRIEVAL")
        self.assertFalse(turn.escalated)
        self.assertTrue(turn.generated)
        self.assertEqual(turn.answer, "Hello! How can I help with your policy today?")
        self.assertEqual(self.retriever.calls, [])
        self.assertEqual(self.tickets, [])
        self.assertEqual(self.memory.get_last("U101", 1)[0].source, "LLM")
        self.assertEqual(self.metrics.get_summary()["escalations"], {})

    def test_failing_escalation_handler_still_hands_off(self):
        def _broken_handler(session_id, reason, context):
            raise RuntimeError("ticket service down")

        self.retriever.result = RetrievalResult.not_found()
        turn = self._processor(_broken_handler).process("U101", "Is dental cleaning covered?")
        self.assertTrue(turn.escalated)
        self.assertEqual(turn.ticket_id, "")

    def test_repeated_confusion_escalates_for_frustration(self):
        self.processor.process("U101", "I don't understand the waiting period")
        self.processor.process("U101", "still not clear")
        turn = self.processor.process("U101", "I'm still confused")
        self.assertTrue(turn.escalated)
        self.assertEqual(turn.escalation_reason, "frustration")
        self.assertEqual(turn.answer, HANDOFF_MESSAGES["frustration"])

    def test_generation_failure_uses_fallback_answer(self):
        self.generator.error = GenerationError("model timed out")
        turn = self.processor.process("U101", "Is cataract surgery covered?")
        self.assertEqual(turn.answer, GENERATION_FALLBACK)
        self.assertFalse(turn.generated)
        self.assertEqual(self.memory.get_last("U101", 1)[0].content, GENERATION_FALLBACK)
        self.assertEqual(self.metrics.get_summary()["turns"]["generation_failures"], 1)

    def test_empty_message_is_rejected(self):
        with self.assertRaises(ValueError):
            self.processor.process("U101", "   ")
        self.assertEqual(self.memory.get_last("U101", 10), [])

    def test_explain_again_reuses_the_previous_answer(self):
        self.processor.process("U101", "Is cataract surgery covered?")
        turn = self.processor.process("U101", "explain that again")
        self.assertEqual(turn.route, "EXPLAIN_AGAIN")
        self.assertEqual(len(self.retriever.calls), 1)
        self.assertIn(
            "USER REQUESTS EXPLANATION OF:\nCataract surgery is covered after 24 months.",
            self.generator.prompts[-1],
        )
        self.assertEqual(self.memory.get_last("U101", 1)[0].source, "LLM")

    def test_stream_yields_tokens_and_records_the_joined_answer(self):
        self.generator.tokens = ["Covered ", "after 24 months."]
        tokens = list(self.processor.stream("U101", "Is cataract surgery covered?"))
        self.assertEqual(tokens, ["Covered ", "after 24 months."])
        history = self.memory.get_last("U101", 10)
        self.assertEqual([m.content for m in history], ["Is cataract surgery covered?", "Covered after 24 months."])

    def test_stream_failure_before_first_token_yields_fallback(self):
        self.generator.error = GenerationError("connection refused")
        tokens = list(self.processor.stream("U101", "Is cataract surgery covered?"))
        self.assertEqual(tokens, [GENERATION_FALLBACK])
        self.assertEqual(self.memory.get_last("U101", 1)[0].content, GENERATION_FALLBACK)

    def test_stream_escalation_yields_handoff(self):
        self.retriever.result = RetrievalResult.not_found()
        tokens = list(self.processor.stream("U101", "Is dental cleaning covered?"))
        self.assertEqual(tokens, [HANDOFF_MESSAGES["low_confidence"]])
        self.assertEqual(len(self.memory.get_last("U101", 10)), 2)

    def test_metrics_summary_counts_turns(self):
        self.processor.process("U101", "Is cataract surgery covered?")
        self.retriever.result = RetrievalResult.not_found()
        self.processor.process("U101", "Is dental cleaning covered?")
        summary = self.metrics.get_summary()
        self.assertEqual(summary["turns"]["total"], 2)
        self.assertEqual(summary["routes"], {"RETRIEVAL": 2})
        self.assertEqual(summary["retrieval"]["hits"], 1)
        self.assertEqual(summary["retrieval"]["hit_rate_percent"], 50.0)
        self.assertEqual(summary["escalations"], {"low_confidence": 1})


if __name__ == "__main__":
    unittest.main()
