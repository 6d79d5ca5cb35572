import unittest

from carecontext.context_engine import (
    FrustrationPolicy,
    HybridContextEngine,
    is_explain_again,
    is_follow_up,
)
from carecontext.intent import IntentType
from carecontext.models import ContextRoute, ConversationMessage, RetrievalResult


class _FakeRetriever:
    def __init__(self, result=None):
        self.result = result or RetrievalResult(
            context_text="[global/faq.txt] Cataract surgery is covered after 24 months.",
            found=True,
            confidence=0.885,
            sources=("global/faq.txt",),
        )
        self.calls = []

    def retrieve(self, session_or_user_id, query_text, filters=None):
        self.calls.append((session_or_user_id, query_text, filters))
        return self.result


class _FakeMemory:
    def __init__(self, history=None):
        self.history = list(history or [])
        self.requests = []

    def get_last(self, session_id, limit):
        self.requests.append((session_id, limit))
        return list(self.history[-limit:])


def _user(content):
    return ConversationMessage(session_id="U101", role="user", content=content, message_type="QUESTION")


def _answer(content):
    return ConversationMessage(session_id="U101", role="assistant", content=content, message_type="ANSWER")


class TestHybridContextEngine(unittest.TestCase):
    def setUp(self):
        self.retriever = _FakeRetriever()
        self.memory = _FakeMemory()
        self.engine = HybridContextEngine(self.memory, self.retriever)

    def test_follow_up_without_domain_term_skips_retrieval(self):
        history = [_user("Is cataract covered?"), _answer("Yes, after 24 months.")]
        result = self.engine.build_context("U101", "what did you mean by that", IntentType.POLICY_INFO, history)
        self.assertEqual(result.route, ContextRoute.FOLLOW_UP)
        self.assertEqual(self.retriever.calls, [])
        self.assertIn("CONVERSATION CONTEXT:", result.context_text)
        self.assertIn("assistant: Yes, after 24 months.", result.context_text)
        self.assertNotIn("POLICY CONTEXT:", result.context_text)
        self.assertFalse(result.is_low_confidence)

    def test_follow_up_marker_without_history_still_retrieves(self):
        result = self.engine.build_context("U101", "what did you mean by that", IntentType.POLICY_INFO, [])
        self.assertEqual(result.route, ContextRoute.RETRIEVAL)
        self.assertEqual(len(self.retriever.calls), 1)

    def test_follow_up_with_new_domain_term_retrieves(self):
        history = [_user("Is cataract covered?"), _answer("Yes, after 24 months.")]
        result = self.engine.build_context(
            "U101", "and what about that maternity waiting period", IntentType.POLICY_INFO, history
        )
        self.assertEqual(result.route, ContextRoute.RETRIEVAL)
        self.assertIn("POLICY CONTEXT:", result.context_text)
        self.assertEqual(result.sources, ("global/faq.txt",))
        self.assertAlmostEqual(result.confidence, 0.885)

    def test_explain_again_replays_last_answer_without_retrieval(self):
        history = [_user("Is cataract covered?"), _answer("X"), _user("ok")]
        result = self.engine.build_context("U101", "explain that again", history=history)
        self.assertEqual(result.route, ContextRoute.EXPLAIN_AGAIN)
        self.assertIn("USER REQUESTS EXPLANATION OF:\nX", result.context_text)
        self.assertEqual(self.retriever.calls, [])
        self.assertFalse(result.is_low_confidence)

    def test_explain_again_without_an_answer_falls_through(self):
        history = [_user("hello")]
        result = self.engine.build_context("U101", "explain that again", history=history)
        self.assertEqual(result.route, ContextRoute.FOLLOW_UP)
        self.assertNotIn("USER REQUESTS EXPLANATION OF:", result.context_text)

    def test_explaining_a_new_topic_is_not_a_repeat_request(self):
        history = [_answer("Earlier answer")]
        result = self.engine.build_context("U101", "explain the claim process", IntentType.CLAIM_PROCESS, history)
        self.assertEqual(result.route, ContextRoute.RETRIEVAL)
        self.assertEqual(len(self.retriever.calls), 1)

    def test_retrieval_miss_is_low_confidence(self):
        self.retriever.result = RetrievalResult.not_found()
        result = self.engine.build_context("U101", "Is dental cleaning covered?", IntentType.POLICY_INFO, [])
        self.assertTrue(result.is_low_confidence)
        self.assertEqual(result.confidence, 0.0)
        self.assertTrue(result.should_escalate)
        self.assertEqual(result.escalation_reason, "low_confidence")

    def test_ticket_layer_intents_skip_retrieval(self):
        for intent in (IntentType.CLAIM_STATUS, IntentType.TALK_TO_AGENT):
            with self.subTest(intent=intent):
                result = self.engine.build_context("U101", "Where is my claim CLM-42?", intent, [])
                self.assertEqual(result.route, ContextRoute.NO_RETRIEVAL)
                self.assertFalse(result.is_low_confidence)
        self.assertEqual(self.retriever.calls, [])

    def test_unknown_intent_and_short_questions_skip_retrieval(self):
        self.retriever.result = RetrievalResult.not_found()
        cases = (
            ("hello there", IntentType.UNKNOWN),
            ("thanks, that helps a lot", IntentType.UNKNOWN),
            ("cover", IntentType.POLICY_INFO),
        )
        for question, intent in cases:
            with self.subTest(question=question):
                result = self.engine.build_context("U101", question, intent, [])
                self.assertEqual(result.route, ContextRoute.NO_RETRIEVAL)
                self.assertFalse(result.is_low_confidence)
                self.assertFalse(result.should_escalate)
        self.assertEqual(self.retriever.calls, [])

    def test_history_is_loaded_when_not_provided(self):
        self.memory.history = [_user(f"question {i}") for i in range(12)]
        result = self.engine.build_context("U101", "Is cataract covered?", IntentType.POLICY_INFO)
        self.assertEqual(self.memory.requests, [("U101", 10)])
        # Only the last five turns reach the prompt.
        self.assertNotIn("question 6", result.context_text)
        self.assertIn("question 7", result.context_text)
        self.assertIn("question 11", result.context_text)

    def test_intent_labels_are_accepted_as_strings(self):
        result = self.engine.build_context("U101", "Where is my claim?", "ClaimStatus", [])
        self.assertEqual(result.intent, "CLAIM_STATUS")
        self.assertEqual(result.route, ContextRoute.NO_RETRIEVAL)

    def test_frustration_outranks_low_confidence(self):
        self.retriever.result = RetrievalResult.not_found()
        result = self.engine.build_context(
            "U101", "this bot is useless, is dental covered?", IntentType.POLICY_INFO, []
        )
        self.assertTrue(result.is_frustrated)
        self.assertTrue(result.is_low_confidence)
        self.assertEqual(result.escalation_reason, "frustration")


class TestFrustrationPolicy(unittest.TestCase):
    def setUp(self):
        self.policy = FrustrationPolicy()

    def test_repeated_confusion_escalates(self):
        history = [
            _user("I don't understand the waiting period"), _answer("It is 24 months."),
            _user("still not clear"), _answer("You wait 24 months."),
            _user("I'm confused"), _answer("Coverage starts after 24 months."),
        ]
        self.assertTrue(self.policy.evaluate("I am still confused", history))

    def test_run_is_broken_by_a_calm_turn(self):
        history = [_user("I'm confused"), _user("Is maternity covered?"), _user("not clear")]
        self.assertFalse(self.policy.evaluate("I don't understand", history))

    def test_current_question_must_be_confused_to_extend_the_run(self):
        history = [_user("confused"), _user("not clear"), _user("I don't understand")]
        self.assertFalse(self.policy.evaluate("Is maternity covered?", history))

    def test_recorded_copy_of_current_question_is_not_double_counted(self):
        history = [_user("I'm confused"), _answer("Sorry."), _user("still not clear")]
        self.assertFalse(self.policy.evaluate("still not clear", history))
        self.assertTrue(self.policy.evaluate("still not clear", history[:-1] + [_user("not clear at all")]))

    def test_hard_markers_escalate_immediately(self):
        for question in ("this is useless", "let me talk to an agent", "raise a ticket", "you are going circular"):
            with self.subTest(question=question):
                self.assertTrue(self.policy.evaluate(question, []))
        self.assertFalse(self.policy.evaluate("what does management cover", []))

    def test_legacy_marker_set(self):
        legacy = FrustrationPolicy.legacy()
        history = [_user("please help"), _user("what does this mean")]
        self.assertTrue(legacy.evaluate("no use, help", history))
        self.assertFalse(self.policy.evaluate("no use, help", history))
        self.assertFalse(legacy.is_hard_frustration("useless"))


class TestQuestionClassifiers(unittest.TestCase):
    def test_explain_again_patterns(self):
        for question in ("explain that again", "Can you repeat that?", "say it again please", "come again?", "explain again"):
            with self.subTest(question=question):
                self.assertTrue(is_explain_again(question))
        for question in ("explain the claim process", "what is the waiting period", "explain cashless claims"):
            with self.subTest(question=question):
                self.assertFalse(is_explain_again(question))

    def test_follow_up_markers_use_word_boundaries(self):
        self.assertTrue(is_follow_up("what did you mean by that"))
        self.assertTrue(is_follow_up("as you said before"))
        self.assertFalse(is_follow_up("what is covered"))


if __name__ == "__main__":
    unittest.main()
