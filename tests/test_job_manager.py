from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from sequence_pipeline.config import PipelineConfig
from sequence_pipeline.errors import JobNotFoundError
from sequence_pipeline.job_manager import JobManager
from sequence_pipeline.models import COMPLETED, ERROR, PENDING, PROCESSING, STOPPED, GenerationRequest


def _request() -> GenerationRequest:
    return GenerationRequest.from_payload({"modelIds": ["ring-01"], "materials": ["platinum"]}, PipelineConfig())


class JobManagerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.manager = JobManager(max_retained_jobs=3, retention_hours=1)

    def test_new_jobs_start_pending(self) -> None:
        record = self.manager.create_job(_request())

        self.assertEqual(record.status, PENDING)
        self.assertEqual(record.progress, 0)
        self.assertEqual(self.manager.metrics().total_jobs, 1)
        self.assertEqual(self.manager.metrics().queue_size, 1)

    def test_readers_get_copies(self) -> None:
        record = self.manager.create_job(_request())
        snapshot = self.manager.get(record.id)
        assert snapshot is not None

        snapshot.status = COMPLETED
        snapshot.request.model_ids.append("tampered")

        fresh = self.manager.get(record.id)
        assert fresh is not None
        self.assertEqual(fresh.status, PENDING)
        self.assertEqual(fresh.request.model_ids, ["ring-01"])

    def test_progress_is_derived_from_completed_units(self) -> None:
        record = self.manager.create_job(_request())
        self.manager.set_processing(record.id)
        self.manager.set_plan(record.id, units_total=72, skipped=[])

        updated = self.manager.record_progress(record.id, "ring-01", "platinum", 17, 18, None)

        self.assertEqual(updated.status, PROCESSING)
        self.assertEqual(updated.progress, 25)
        self.assertEqual(updated.current_frame, 17)
        self.assertEqual(updated.current_material, "platinum")

    def test_cancel_pending_job_stops_it(self) -> None:
        record = self.manager.create_job(_request())

        stopped = self.manager.request_cancel(record.id)

        assert stopped is not None
        self.assertEqual(stopped.status, STOPPED)
        self.assertIsNone(self.manager.request_cancel(record.id))
        self.assertIsNone(self.manager.request_cancel("missing"))

    def test_cancel_processing_job_only_flags_it(self) -> None:
        record = self.manager.create_job(_request())
        self.manager.set_processing(record.id)

        flagged = self.manager.request_cancel(record.id)

        assert flagged is not None
        self.assertEqual(flagged.status, PROCESSING)
        self.assertTrue(flagged.cancel_requested)

    def test_terminal_jobs_are_immutable(self) -> None:
        record = self.manager.create_job(_request())
        self.manager.set_processing(record.id)
        self.manager.set_completed(record.id)

        after = self.manager.set_failed(record.id, "late failure")

        self.assertEqual(after.status, COMPLETED)
        self.assertIsNone(after.error)
        metrics = self.manager.metrics()
        self.assertEqual((metrics.completed_jobs, metrics.failed_jobs), (1, 0))

    def test_require_raises_for_unknown_job(self) -> None:
        with self.assertRaises(JobNotFoundError):
            self.manager.require("missing")

    def test_cleanup_evicts_old_terminal_jobs_but_keeps_counters(self) -> None:
        done = self.manager.create_job(_request())
        self.manager.set_processing(done.id)
        self.manager.set_failed(done.id, "boom")
        waiting = self.manager.create_job(_request())

        removed = self.manager.cleanup_expired(now=datetime.now(timezone.utc) + timedelta(hours=2))

        self.assertEqual(removed, 1)
        self.assertIsNone(self.manager.get(done.id))
        self.assertIsNotNone(self.manager.get(waiting.id))
        metrics = self.manager.metrics()
        self.assertEqual(metrics.total_jobs, 2)
        self.assertEqual(metrics.failed_jobs, 1)
        self.assertEqual(self.manager.get(waiting.id).status, PENDING)

    def test_cleanup_caps_retained_terminal_jobs(self) -> None:
        ids = []
        for _ in range(5):
            record = self.manager.create_job(_request())
            self.manager.set_processing(record.id)
            self.manager.set_completed(record.id)
            ids.append(record.id)

        removed = self.manager.cleanup_expired()

        self.assertEqual(removed, 2)
        self.assertIsNone(self.manager.get(ids[0]))
        self.assertIsNone(self.manager.get(ids[1]))
        self.assertEqual(len(self.manager.list_jobs()), 3)
        self.assertEqual(self.manager.metrics().completed_jobs, 5)

    def test_processing_time_is_averaged_over_completed_jobs(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        now = [start]
        with mock.patch("sequence_pipeline.job_manager._utcnow", side_effect=lambda: now[0]):
            for seconds in (4, 8):
                record = self.manager.create_job(_request())
                self.manager.set_processing(record.id)
                now[0] += timedelta(seconds=seconds)
                self.manager.set_completed(record.id)
            failed = self.manager.create_job(_request())
            self.manager.set_processing(failed.id)
            now[0] += timedelta(seconds=100)
            self.manager.set_failed(failed.id, "boom")

        metrics = self.manager.metrics()

        self.assertEqual(metrics.total_processing_seconds, 12.0)
        self.assertEqual(metrics.average_completion_seconds, 6.0)
        self.assertEqual(metrics.to_dict()["averageCompletionTime"], 6.0)

    def test_metrics_count_each_state_once(self) -> None:
        states = []
        for _ in range(4):
            states.append(self.manager.create_job(_request()).id)
        self.manager.set_processing(states[0])
        self.manager.set_processing(states[1])
        self.manager.set_failed(states[1], "boom")
        self.manager.request_cancel(states[2])

        metrics = self.manager.metrics()

        self.assertEqual(metrics.total_jobs, 4)
        self.assertEqual(metrics.active_jobs, 1)
        self.assertEqual(metrics.queue_size, 1)
        self.assertEqual(metrics.failed_jobs, 1)
        self.assertEqual(metrics.stopped_jobs, 1)
        self.assertLessEqual(
            metrics.active_jobs + metrics.queue_size + metrics.completed_jobs + metrics.failed_jobs,
            metrics.total_jobs,
        )
        self.assertEqual(self.manager.get(states[1]).status, ERROR)


if __name__ == "__main__":
    unittest.main()
