from __future__ import annotations

import importlib
import os
import unittest


class AnalyzeBatchTests(unittest.TestCase):
    def setUp(self) -> None:
        self._old_tz = os.environ.get("TIMEZONE")
        os.environ["TIMEZONE"] = "UTC"
        import healthsync.settings as settings_mod
        importlib.reload(settings_mod)

        from healthsync.analysis import analyze_batch
        from healthsync.errors import MalformedBatch

        self.analyze_batch = analyze_batch
        self.MalformedBatch = MalformedBatch

    def tearDown(self) -> None:
        if self._old_tz is None:
            os.environ.pop("TIMEZONE", None)
        else:
            os.environ["TIMEZONE"] = self._old_tz
        import healthsync.settings as settings_mod
        importlib.reload(settings_mod)

    def test_step_duplicates_are_reported(self) -> None:
        payload = {
            "data": {
                "metrics": [
                    {
                        "name": "steps",
                        "units": "count",
                        "data": [
                            {"date": "2024-03-10 08:00:00 +0000", "qty": 0.2, "source": "iPhone"},
                            {"date": "2024-03-10 08:00:00 +0000", "qty": 12.1, "source": "Apple Watch"},
                            {"date": "2024-03-11 08:00:00 +0000", "qty": 30, "source": "Apple Watch"},
                            {"qty": 5},
                        ],
                    },
                    {"name": "mood_score", "units": "", "data": []},
                ],
                "workouts": [{"name": "Walk"}],
            }
        }

        analysis = self.analyze_batch(payload)

        self.assertEqual(analysis["metrics_received"], 2)
        self.assertEqual(analysis["workouts_received"], 1)
        self.assertEqual(analysis["samples_received"], 4)

        steps, mood = analysis["metric_types"]
        self.assertEqual(steps["kind"], "step_count")
        self.assertEqual(steps["data_points"], 4)
        self.assertEqual(steps["invalid_points"], 1)
        self.assertEqual(steps["duplicate_timestamps"], 1)
        self.assertEqual(steps["sources"], ["Apple Watch", "iPhone"])
        self.assertEqual(steps["date_range"]["earliest"], "2024-03-10T08:00:00+00:00")
        self.assertIsNone(mood["kind"])

        step = analysis["step_data_analysis"]
        self.assertAlmostEqual(step["total_steps"], 47.3)
        self.assertAlmostEqual(step["deduplicated_steps"], 30.2)
        self.assertEqual(len(step["duplicates_detected"]), 1)
        self.assertEqual(step["duplicates_detected"][0]["count"], 2)
        self.assertEqual(step["by_date"]["2024-03-10"]["samples"], 2)
        self.assertEqual(step["by_date"]["unknown"]["samples"], 1)

    def test_malformed_payload_raises(self) -> None:
        with self.assertRaises(self.MalformedBatch):
            self.analyze_batch({"nothing": "here"})


if __name__ == "__main__":
    unittest.main()
