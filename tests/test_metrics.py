from __future__ import annotations

import unittest

from healthsync.errors import UnsupportedMetricKind
from healthsync.metrics import (
    DEVICE_PRIORITY,
    FULL_EXPORT_SOURCE,
    REALTIME_EXPORT_SOURCE,
    Aggregation,
    MetricKind,
    MetricRegistry,
    workout_kind_name,
)


class MetricRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = MetricRegistry()

    def test_aliases_resolve_case_insensitively(self) -> None:
        self.assertEqual(self.registry.resolve("steps").name, "step_count")
        self.assertEqual(self.registry.resolve("Step_Count").name, "step_count")
        self.assertEqual(self.registry.resolve("active_energy_burned").name, "active_energy")
        self.assertEqual(self.registry.resolve("weight_body_mass").name, "weight")

    def test_unknown_name_lists_supported_types(self) -> None:
        with self.assertRaises(UnsupportedMetricKind) as ctx:
            self.registry.resolve("caffeine")
        self.assertIn("steps", ctx.exception.supported)
        self.assertIsInstance(ctx.exception, ValueError)

    def test_default_granularity_follows_aggregation(self) -> None:
        self.assertEqual(self.registry.resolve("step_count").default_granularity, "daily")
        self.assertEqual(self.registry.resolve("active_energy").default_granularity, "daily")
        self.assertEqual(self.registry.resolve("heart_rate").default_granularity, "none")
        self.assertEqual(self.registry.resolve("weight").default_granularity, "none")

    def test_explicit_default_granularity_is_kept(self) -> None:
        kind = MetricKind("stand_hours", Aggregation.SUM, default_granularity="weekly")
        self.assertEqual(kind.default_granularity, "weekly")

    def test_workout_kinds_resolve_dynamically(self) -> None:
        kind = self.registry.resolve("workout_outdoor_run")
        self.assertEqual(kind.aggregation, Aggregation.SUM)
        self.assertEqual(kind.unit, "s")
        self.assertEqual(workout_kind_name("Outdoor Run"), "workout_outdoor_run")
        self.assertEqual(workout_kind_name("  "), "")
        with self.assertRaises(UnsupportedMetricKind):
            self.registry.resolve("workout_")

    def test_energy_conversion_table(self) -> None:
        kind = self.registry.resolve("active_energy")
        self.assertAlmostEqual(kind.normalize(418.4, "kJ"), 100.0)
        self.assertAlmostEqual(kind.normalize(418.4, "KJ"), 100.0)
        self.assertEqual(kind.normalize(12.0, "kcal"), 12.0)
        self.assertIsNone(kind.normalize(12.0, None))
        self.assertIsNone(kind.normalize(12.0, "BTU"))

    def test_add_conversion_extends_table(self) -> None:
        self.registry.add_conversion("active_energy", "MJ", 0.004184)
        kind = self.registry.resolve("active_energy")
        self.assertAlmostEqual(kind.normalize(0.4184, "MJ"), 100.0)
        # Other kinds sharing the table are not affected.
        self.assertIsNone(self.registry.resolve("basal_energy").normalize(1.0, "MJ"))

    def test_add_conversion_rejects_non_convertible_kind(self) -> None:
        with self.assertRaises(ValueError):
            self.registry.add_conversion("step_count", "k", 1000)

    def test_device_priority_filter(self) -> None:
        self.assertTrue(DEVICE_PRIORITY(REALTIME_EXPORT_SOURCE, {}))
        self.assertTrue(DEVICE_PRIORITY(REALTIME_EXPORT_SOURCE, {"source": "Alice's iPhone"}))
        self.assertTrue(DEVICE_PRIORITY(FULL_EXPORT_SOURCE, {"source": "Alice's Apple Watch"}))
        self.assertFalse(DEVICE_PRIORITY(FULL_EXPORT_SOURCE, {"source": "Alice's iPhone"}))
        self.assertFalse(DEVICE_PRIORITY(FULL_EXPORT_SOURCE, {}))
        self.assertFalse(DEVICE_PRIORITY("manual", {"source": "Watch"}))

    def test_set_source_filter(self) -> None:
        self.registry.set_source_filter("step_count", None)
        self.assertIsNone(self.registry.resolve("steps").source_filter)
        self.assertIs(MetricRegistry().resolve("steps").source_filter, DEVICE_PRIORITY)


if __name__ == "__main__":
    unittest.main()
