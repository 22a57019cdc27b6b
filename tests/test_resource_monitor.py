from __future__ import annotations

import os
import tempfile
import time
import unittest
from pathlib import Path

from sequence_pipeline.config import PipelineConfig
from sequence_pipeline.models import CRITICAL, ELEVATED, NORMAL
from sequence_pipeline.resource_monitor import ResourceMonitor, classify_disk, classify_memory


class ClassifyTest(unittest.TestCase):
    def setUp(self) -> None:
        self.config = PipelineConfig(max_memory_mb=1000, min_free_disk_mb=500)

    def test_memory_levels(self) -> None:
        self.assertEqual(classify_memory(100, 10, self.config), NORMAL)
        self.assertEqual(classify_memory(850, 10, self.config), ELEVATED)
        self.assertEqual(classify_memory(100, 90, self.config), ELEVATED)
        self.assertEqual(classify_memory(1200, 10, self.config), CRITICAL)
        self.assertEqual(classify_memory(100, 97, self.config), CRITICAL)

    def test_disk_levels(self) -> None:
        self.assertEqual(classify_disk(50_000, 20, self.config), NORMAL)
        self.assertEqual(classify_disk(800, 20, self.config), ELEVATED)
        self.assertEqual(classify_disk(50_000, 88, self.config), ELEVATED)
        self.assertEqual(classify_disk(100, 20, self.config), CRITICAL)
        self.assertEqual(classify_disk(50_000, 99, self.config), CRITICAL)


class ResourceMonitorTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _config(self, **overrides) -> PipelineConfig:
        return PipelineConfig(
            models_dir=self.root / "models",
            sequences_dir=self.root / "sequences",
        ).with_overrides(**overrides)

    def test_unreachable_free_space_floor_is_critical(self) -> None:
        monitor = ResourceMonitor(self._config(min_free_disk_mb=10**12))

        snapshot = monitor.snapshot()

        self.assertEqual(snapshot.disk_pressure, CRITICAL)
        self.assertTrue(snapshot.is_critical)
        self.assertEqual(monitor.disk_pressure(), CRITICAL)
        self.assertEqual(snapshot.pressure_details()["diskPressure"], CRITICAL)

    def test_snapshot_is_cached_until_refreshed(self) -> None:
        monitor = ResourceMonitor(self._config(snapshot_ttl_seconds=60))

        first = monitor.snapshot()
        self.assertIs(monitor.snapshot(), first)
        self.assertIsNot(monitor.snapshot(refresh=True), first)

    def test_missing_sequences_dir_still_samples(self) -> None:
        monitor = ResourceMonitor(self._config())

        snapshot = monitor.snapshot()

        self.assertGreater(snapshot.disk_total_mb, 0)
        self.assertGreater(snapshot.memory_rss_mb, 0)
        self.assertIn(monitor.memory_pressure(), (NORMAL, ELEVATED, CRITICAL))

    def test_preflight_sweeps_only_stale_temp_files(self) -> None:
        folder = self.root / "sequences" / "ring-01-platinum"
        folder.mkdir(parents=True)
        stale = folder / ".3.webp.abc123.tmp"
        fresh = folder / ".4.webp.def456.tmp"
        frame = folder / "0.webp"
        for path in (stale, fresh, frame):
            path.write_bytes(b"x")
        old = time.time() - 7200
        os.utime(stale, (old, old))
        os.utime(frame, (old, old))

        report = ResourceMonitor(self._config(temp_file_max_age_seconds=3600)).preflight_optimize()

        self.assertEqual(report["removed_temp_files"], 1)
        self.assertFalse(stale.exists())
        self.assertTrue(fresh.exists())
        self.assertTrue(frame.exists())

    def test_preflight_tolerates_missing_roots(self) -> None:
        monitor = ResourceMonitor(self._config(), temp_roots=[self.root / "nowhere"])

        report = monitor.preflight_optimize()

        self.assertEqual(report["removed_temp_files"], 0)


if __name__ == "__main__":
    unittest.main()
