import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from carecontext.metrics import MetricsCollector
from carecontext.models import ContextRoute, HybridContextResult

HIT = HybridContextResult(
    context_text="POLICY CONTEXT:\n[global/faq.txt] Cataract covered.",
    confidence=0.885,
    sources=("global/faq.txt",),
    route=ContextRoute.RETRIEVAL,
    intent="POLICY_INFO",
)


class TestMetricsCollector(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.log_dir = Path(self.tmp.name) / "logs"

    def tearDown(self):
        self.tmp.cleanup()

    def test_turn_is_appended_to_jsonl(self):
        metrics = MetricsCollector(log_dir=self.log_dir)
        metrics.record_turn("U101", HIT, 12.5)
        lines = (self.log_dir / "metrics.jsonl").read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(lines), 1)
        entry = json.loads(lines[0])
        self.assertEqual((entry["session_id"], entry["route"], entry["escalation"]), ("U101", "RETRIEVAL", ""))

    def test_unwritable_log_is_reported_and_counted(self):
        metrics = MetricsCollector(log_dir=self.log_dir)
        # A directory in place of the file makes every append fail.
        metrics._log_path = self.log_dir
        with patch("carecontext.metrics.logger") as mock_logger:
            metrics.record_turn("U101", HIT, 12.5)
        self.assertEqual(metrics.get_summary()["turns"]["total"], 1)
        mock_logger.warning.assert_called_once()
        self.assertEqual(mock_logger.warning.call_args.args[0], "metrics_log_write_failed")


if __name__ == "__main__":
    unittest.main()
