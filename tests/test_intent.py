import unittest

from carecontext.errors import GenerationError
from carecontext.intent import (
    IntentClassifier,
    IntentType,
    classify_by_keywords,
    parse_intent_payload,
    strip_code_fences,
)


class _ScriptedGenerator:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


class TestIntentParsing(unittest.TestCase):
    def test_label_variants_normalize(self):
        for label in ("ClaimStatus", "CLAIM_STATUS", "claim status", "claim-status"):
            with self.subTest(label=label):
                self.assertEqual(IntentType.parse(label), IntentType.CLAIM_STATUS)
        self.assertEqual(IntentType.parse("Refund"), IntentType.UNKNOWN)
        self.assertEqual(IntentType.parse(None), IntentType.UNKNOWN)

    def test_fenced_json_is_unwrapped(self):
        raw = '```json\n{"intent": "PolicyInfo"}\n```'
        self.assertEqual(strip_code_fences(raw), '{"intent": "PolicyInfo"}')
        self.assertEqual(parse_intent_payload(raw), IntentType.POLICY_INFO)

    def test_json_inside_prose(self):
        self.assertEqual(parse_intent_payload('Sure! {"intent": "TalkToAgent"} hope that helps'), IntentType.TALK_TO_AGENT)

    def test_unusable_payloads(self):
        self.assertIsNone(parse_intent_payload("PolicyInfo"))
        self.assertIsNone(parse_intent_payload('{"label": "PolicyInfo"}'))
        self.assertIsNone(parse_intent_payload("{not json}"))
        self.assertEqual(parse_intent_payload('{"intent": "Refund"}'), IntentType.UNKNOWN)


class TestKeywordClassifier(unittest.TestCase):
    def test_keyword_cases(self):
        cases = {
            "I want to talk to a human": IntentType.TALK_TO_AGENT,
            "What is the status of my claim?": IntentType.CLAIM_STATUS,
            "where is my claim": IntentType.CLAIM_STATUS,
            "How do I file a claim for hospitalisation?": IntentType.CLAIM_PROCESS,
            "Is cashless available?": IntentType.CLAIM_PROCESS,
            "Is cataract surgery covered?": IntentType.POLICY_INFO,
            "hello there": IntentType.UNKNOWN,
        }
        for message, expected in cases.items():
            with self.subTest(message=message):
                self.assertEqual(classify_by_keywords(message), expected)


class TestIntentClassifier(unittest.TestCase):
    def test_model_answer_wins(self):
        generator = _ScriptedGenerator(reply='{"intent": "ClaimProcess"}')
        classifier = IntentClassifier(generator)
        self.assertEqual(classifier.detect("Is cataract covered?"), IntentType.CLAIM_PROCESS)
        self.assertIn("Is cataract covered?", generator.prompts[0])

    def test_generation_failure_falls_back_to_keywords(self):
        classifier = IntentClassifier(_ScriptedGenerator(error=GenerationError("timeout")))
        self.assertEqual(classifier.detect("Is maternity covered?"), IntentType.POLICY_INFO)

    def test_garbage_output_falls_back_to_keywords(self):
        classifier = IntentClassifier(_ScriptedGenerator(reply="I think the user is asking about a claim"))
        self.assertEqual(classifier.detect("I need an agent"), IntentType.TALK_TO_AGENT)

    def test_empty_message_never_reaches_the_model(self):
        generator = _ScriptedGenerator(reply='{"intent": "PolicyInfo"}')
        classifier = IntentClassifier(generator)
        self.assertEqual(classifier.detect("   "), IntentType.UNKNOWN)
        self.assertEqual(generator.prompts, [])

    def test_without_generator_uses_keywords(self):
        self.assertEqual(IntentClassifier().detect("track my claim status"), IntentType.CLAIM_STATUS)


if __name__ == "__main__":
    unittest.main()
