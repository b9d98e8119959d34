"""
Tests for the analysis scheduler: passes, retries, isolation and the ticker.
"""

import asyncio
import json
import shutil
import sqlite3
import threading
import time
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock, call, patch

import sys
sys.path.append('src')

from config import Config, SchedulerConfig
from database_manager import DatabaseManager, format_timestamp
from exceptions import DatabaseOperationError
from job_queue import DetectionQueue
from models import DetectionStatus, ErrorKind
from resource_manager import StorageManager
from scheduler import AnalysisScheduler, compute_retry_delay
from vehicle_detector import MockVehicleDetector

CAR_AND_INVALID = json.dumps({"bounding_boxes": [
    {"vehicle_type": "car", "x_min": 100, "y_min": 100, "x_max": 300, "y_max": 300,
     "confidence_score": 0.9},
    {"vehicle_type": "truck", "x_min": 500, "y_min": 100, "x_max": 200, "y_max": 150,
     "confidence_score": 0.4},
]})
ONE_BUS = json.dumps({"bounding_boxes": [
    {"vehicle_type": "bus", "x_min": 200, "y_min": 200, "x_max": 600, "y_max": 500,
     "confidence_score": 0.8},
]})


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


class TestComputeRetryDelay:
    """Test the backoff policy."""

    def setup_method(self):
        self.settings = SchedulerConfig(base_retry_delay=1, max_retry_delay=30, rate_limit_delay=2)

    def test_exponential_backoff_capped(self):
        delays = [compute_retry_delay(ErrorKind.TRANSPORT, attempt, self.settings)
                  for attempt in range(1, 7)]
        assert delays == [1, 2, 4, 8, 16, 30]

    def test_rate_limit_is_linear(self):
        delays = [compute_retry_delay(ErrorKind.RATE_LIMITED, attempt, self.settings)
                  for attempt in range(1, 4)]
        assert delays == [2, 4, 6]


class SchedulerTestCase:
    """Shared setup: isolated database, image directory and a recorded sleep."""

    def setup_method(self):
        self.build()

    def build(self, **overrides):
        self.config = Config.create_test_config(**overrides)
        self.database = DatabaseManager(self.config)
        self.queue = DetectionQueue(self.database)
        self.storage = StorageManager(self.config)
        self.sleep = AsyncMock()
        self.schedulers = []

    def rebuild(self, **overrides):
        self.teardown_method()
        self.build(**overrides)

    def teardown_method(self):
        for scheduler in self.schedulers:
            scheduler.close()
        shutil.rmtree(self.config.storage.data_dir, ignore_errors=True)

    def make_scheduler(self, detector, **kwargs):
        scheduler = AnalysisScheduler(self.config, self.queue, detector, self.storage,
                                      sleep=self.sleep, **kwargs)
        self.schedulers.append(scheduler)
        return scheduler

    def add_snapshot(self, name, write_file=True, enqueue=True):
        if write_file:
            (self.config.storage.image_dir / name).write_bytes(self.payload(name))
        snapshot = self.database.insert_snapshot("cam-1", name, f"hash-{name}", None, True)
        if enqueue:
            self.queue.enqueue(snapshot)
        return snapshot

    @staticmethod
    def payload(name):
        return f"image-bytes-{name}".encode()

    def record_for(self, snapshot):
        return self.database.get_detection_for_snapshot(snapshot.id)


class TestRunPass(SchedulerTestCase):
    """Test a single pass over the queue."""

    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self):
        snapshot = self.add_snapshot("a.jpg")
        scheduler = self.make_scheduler(MockVehicleDetector(self.config, [CAR_AND_INVALID]))

        summary = await scheduler.run_pass()

        assert summary.claimed == 1
        assert summary.completed == 1
        assert summary.failed == 0
        record = self.record_for(snapshot)
        assert record.status == DetectionStatus.COMPLETED
        assert record.total_boxes == 2
        assert record.counts_by_category['cars'] == 1
        assert record.counts_by_category['trucks'] == 0
        assert record.confidence_score == pytest.approx(0.9)
        boxes = self.database.get_bounding_boxes(record.id)
        assert sorted(box.is_valid for box in boxes) == [False, True]

    @pytest.mark.asyncio
    async def test_empty_queue(self):
        scheduler = self.make_scheduler(MockVehicleDetector(self.config))

        summary = await scheduler.run_pass()

        assert summary.claimed == 0
        assert summary.batches == 0
        assert summary.skipped is False
        self.sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        self.rebuild(SCHEDULER_BASE_RETRY_DELAY="1", SCHEDULER_RATE_LIMIT_DELAY="2",
                     SCHEDULER_MAX_RETRY_DELAY="30")
        snapshot = self.add_snapshot("a.jpg")
        detector = MockVehicleDetector(self.config, [
            ErrorKind.TRANSPORT, ErrorKind.RATE_LIMITED, ONE_BUS
        ])
        scheduler = self.make_scheduler(detector)

        summary = await scheduler.run_pass()

        assert summary.completed == 1
        assert summary.retries == 2
        assert summary.outcomes[0].attempts == 3
        assert self.sleep.await_args_list == [call(1.0), call(4.0)]
        record = self.record_for(snapshot)
        assert record.status == DetectionStatus.COMPLETED
        assert record.retry_count == 2
        assert record.last_retry_at is not None
        assert record.error_kind is None
        assert record.counts_by_category['buses'] == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        snapshot = self.add_snapshot("a.jpg")
        detector = MockVehicleDetector(self.config, [ErrorKind.TRANSPORT] * 5)
        scheduler = self.make_scheduler(detector)

        summary = await scheduler.run_pass()

        assert detector.call_count == self.config.scheduler.max_retries
        assert summary.failed == 1
        record = self.record_for(snapshot)
        assert record.status == DetectionStatus.FAILED
        assert record.error_kind == ErrorKind.TRANSPORT
        assert record.retry_count == self.config.scheduler.max_retries - 1
        assert record.total_boxes == 0

    @pytest.mark.asyncio
    async def test_malformed_response_is_permanent(self):
        snapshot = self.add_snapshot("a.jpg")
        detector = MockVehicleDetector(self.config, ["Sure! Here are the cars: three"])
        scheduler = self.make_scheduler(detector)

        summary = await scheduler.run_pass()

        assert detector.call_count == 1
        assert summary.retries == 0
        record = self.record_for(snapshot)
        assert record.status == DetectionStatus.FAILED
        assert record.error_kind == ErrorKind.MALFORMED_RESPONSE
        assert record.retry_count == 0
        assert self.database.get_bounding_boxes(record.id) == []

    @pytest.mark.asyncio
    async def test_missing_image_file(self):
        snapshot = self.add_snapshot("gone.jpg", write_file=False)
        detector = MockVehicleDetector(self.config)
        scheduler = self.make_scheduler(detector)

        summary = await scheduler.run_pass()

        assert detector.call_count == 0
        assert summary.outcomes[0].error_kind == ErrorKind.FILE_NOT_FOUND
        record = self.record_for(snapshot)
        assert record.status == DetectionStatus.FAILED
        assert record.error_kind == ErrorKind.FILE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self):
        good = self.add_snapshot("good.jpg")
        malformed = self.add_snapshot("malformed.jpg")
        service = self.add_snapshot("service.jpg")
        exploding = self.add_snapshot("exploding.jpg")

        class ExplodingDetector(MockVehicleDetector):
            def infer(self, image_bytes):
                if image_bytes == SchedulerTestCase.payload("exploding.jpg"):
                    raise RuntimeError("unexpected crash")
                return super().infer(image_bytes)

        detector = ExplodingDetector(self.config, {
            self.payload("good.jpg"): [ONE_BUS],
            self.payload("malformed.jpg"): ['{"bounding_boxes": [{"vehicle_type": "car"}]}'],
            self.payload("service.jpg"): [ErrorKind.SERVICE_ERROR],
        })
        scheduler = self.make_scheduler(detector)

        summary = await scheduler.run_pass()

        assert summary.claimed == 4
        assert summary.completed == 1
        assert summary.failed == 3
        assert self.record_for(good).status == DetectionStatus.COMPLETED
        assert self.record_for(malformed).error_kind == ErrorKind.MALFORMED_RESPONSE
        assert self.record_for(service).error_kind == ErrorKind.SERVICE_ERROR
        crashed = self.record_for(exploding)
        assert crashed.status == DetectionStatus.FAILED
        assert "unexpected crash" in crashed.last_error

    @pytest.mark.asyncio
    async def test_batches_and_chunks_with_rate_limit_delay(self):
        self.rebuild(SCHEDULER_BATCH_SIZE="4", SCHEDULER_MAX_CONCURRENT_REQUESTS="2",
                     SCHEDULER_RATE_LIMIT_DELAY="2")
        for i in range(5):
            self.add_snapshot(f"{i}.jpg")
        scheduler = self.make_scheduler(MockVehicleDetector(self.config))

        summary = await scheduler.run_pass()

        assert summary.batches == 2
        assert summary.claimed == 5
        assert summary.completed == 5
        # One delay between the two chunks of batch 1, one between the batches
        assert self.sleep.await_args_list == [call(2.0), call(2.0)]
        assert self.queue.get_queue_status().completed == 5

    @pytest.mark.asyncio
    async def test_concurrency_limited_per_chunk(self):
        self.rebuild(SCHEDULER_BATCH_SIZE="6", SCHEDULER_MAX_CONCURRENT_REQUESTS="3")
        for i in range(6):
            self.add_snapshot(f"{i}.jpg")

        lock = threading.Lock()
        state = {'active': 0, 'peak': 0}

        class SlowDetector(MockVehicleDetector):
            def infer(self, image_bytes):
                with lock:
                    state['active'] += 1
                    state['peak'] = max(state['peak'], state['active'])
                time.sleep(0.05)
                with lock:
                    state['active'] -= 1
                return super().infer(image_bytes)

        scheduler = self.make_scheduler(SlowDetector(self.config))

        summary = await scheduler.run_pass()

        assert summary.completed == 6
        assert 1 <= state['peak'] <= 3

    @pytest.mark.asyncio
    async def test_oldest_snapshot_processed_first(self):
        self.rebuild(SCHEDULER_BATCH_SIZE="1")
        newer = self.add_snapshot("newer.jpg")
        older = self.add_snapshot("older.jpg")
        with sqlite3.connect(self.database.db_path) as conn:
            conn.execute("UPDATE detections SET created_at = ? WHERE snapshot_id = ?",
                         (format_timestamp(datetime.now() - timedelta(hours=1)), older.id))
        scheduler = self.make_scheduler(MockVehicleDetector(self.config))

        summary = await scheduler.run_pass()

        assert [outcome.snapshot_id for outcome in summary.outcomes] == [older.id, newer.id]

    @pytest.mark.asyncio
    async def test_reclaims_stuck_records_first(self):
        snapshot = self.add_snapshot("stuck.jpg")
        job = self.queue.dequeue_batch(1)[0]
        with sqlite3.connect(self.database.db_path) as conn:
            conn.execute("UPDATE detections SET claimed_at = ? WHERE id = ?",
                         (format_timestamp(datetime.now() - timedelta(hours=2)), job.detection_id))
        scheduler = self.make_scheduler(MockVehicleDetector(self.config, [ONE_BUS]))

        summary = await scheduler.run_pass()

        assert summary.reclaimed == 1
        assert summary.completed == 1
        assert self.record_for(snapshot).status == DetectionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reenqueue_during_analysis_discards_result(self):
        snapshot = self.add_snapshot("a.jpg")
        queue = self.queue

        class ReenqueueingDetector(MockVehicleDetector):
            def infer(self, image_bytes):
                queue.enqueue(snapshot)
                return super().infer(image_bytes)

        scheduler = self.make_scheduler(ReenqueueingDetector(self.config, [ONE_BUS]))

        summary = await scheduler.run_pass()

        assert summary.stale == 1
        assert summary.completed == 0
        record = self.record_for(snapshot)
        assert record.status == DetectionStatus.QUEUED
        assert self.database.get_bounding_boxes(record.id) == []

    @pytest.mark.asyncio
    async def test_database_failure_aborts_pass(self):
        self.add_snapshot("a.jpg")
        scheduler = self.make_scheduler(MockVehicleDetector(self.config))

        with patch.object(self.queue, 'complete',
                          side_effect=DatabaseOperationError("database is locked")):
            with pytest.raises(DatabaseOperationError):
                await scheduler.run_pass()

        assert scheduler.is_processing is False

    @pytest.mark.asyncio
    async def test_skipped_when_memory_low(self):
        snapshot = self.add_snapshot("a.jpg")
        monitor = Mock()
        monitor.skip_reason.return_value = "insufficient_memory"
        detector = MockVehicleDetector(self.config)
        scheduler = self.make_scheduler(detector, system_monitor=monitor)

        summary = await scheduler.run_pass()

        assert summary.skipped is True
        assert summary.reason == "insufficient_memory"
        assert detector.call_count == 0
        assert self.record_for(snapshot).status == DetectionStatus.QUEUED


class TestSingleRunGuard(SchedulerTestCase):
    """Test that passes never overlap."""

    @pytest.mark.asyncio
    async def test_second_pass_skipped_while_running(self):
        self.add_snapshot("a.jpg")
        entered = threading.Event()
        release = threading.Event()

        class BlockingDetector(MockVehicleDetector):
            def infer(self, image_bytes):
                entered.set()
                release.wait(timeout=5)
                return super().infer(image_bytes)

        scheduler = self.make_scheduler(BlockingDetector(self.config))
        first = asyncio.create_task(scheduler.run_pass())
        await wait_for(entered.is_set)

        assert scheduler.is_processing is True
        second = await scheduler.run_pass()

        assert second.skipped is True
        assert second.reason == "already_running"

        release.set()
        summary = await first
        assert summary.completed == 1
        assert scheduler.is_processing is False

    @pytest.mark.asyncio
    async def test_analyze_now_enqueues_snapshot(self):
        snapshot = self.add_snapshot("a.jpg", enqueue=False)
        scheduler = self.make_scheduler(MockVehicleDetector(self.config, [ONE_BUS]))

        summary = await scheduler.analyze_now({'id': snapshot.id, 'source_id': 'cam-1',
                                               'file_path': 'a.jpg'})

        assert summary.completed == 1
        assert self.record_for(snapshot).status == DetectionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_analyze_now_unknown_snapshot(self):
        scheduler = self.make_scheduler(MockVehicleDetector(self.config))

        summary = await scheduler.analyze_now({'id': 4242, 'source_id': 'cam-1'})

        assert summary.skipped is True
        assert summary.reason == "enqueue_failed"


class TestTicker(SchedulerTestCase):
    """Test the periodic ticker."""

    def setup_method(self):
        self.build(SCHEDULER_INTERVAL="3600")

    @pytest.mark.asyncio
    async def test_runs_on_start_and_on_trigger(self):
        scheduler = self.make_scheduler(MockVehicleDetector(self.config))

        scheduler.start()
        assert scheduler.is_running is True
        await wait_for(lambda: scheduler.pass_count == 1)

        snapshot = self.add_snapshot("a.jpg")
        assert scheduler.trigger() is True
        await wait_for(lambda: scheduler.pass_count == 2)

        await scheduler.stop()
        assert scheduler.is_running is False
        assert self.record_for(snapshot).status == DetectionStatus.COMPLETED
        assert scheduler.get_status()['last_pass']['completed'] == 1

    @pytest.mark.asyncio
    async def test_fixed_cadence_measured_from_pass_start(self):
        self.rebuild(SCHEDULER_INTERVAL="0.3")
        scheduler = self.make_scheduler(MockVehicleDetector(self.config))
        starts = []

        def slow_reclaim(timeout_minutes):
            starts.append(time.monotonic())
            time.sleep(0.2)
            return 0

        with patch.object(self.queue, 'reclaim_stuck', side_effect=slow_reclaim):
            scheduler.start()
            await wait_for(lambda: len(starts) >= 3)
            await scheduler.stop()

        gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
        # A 0.2s pass on a 0.3s interval keeps a 0.3s period rather than 0.5s
        assert all(0.2 < gap < 0.42 for gap in gaps[:2])

    @pytest.mark.asyncio
    async def test_no_pass_on_start_when_disabled(self):
        self.rebuild(SCHEDULER_INTERVAL="3600", SCHEDULER_RUN_ON_START="false")
        scheduler = self.make_scheduler(MockVehicleDetector(self.config))

        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert scheduler.pass_count == 0

    @pytest.mark.asyncio
    async def test_trigger_when_stopped(self):
        scheduler = self.make_scheduler(MockVehicleDetector(self.config))
        assert scheduler.trigger() is False

    @pytest.mark.asyncio
    async def test_ticker_survives_database_error(self):
        scheduler = self.make_scheduler(MockVehicleDetector(self.config))

        with patch.object(self.queue, 'reclaim_stuck',
                          side_effect=[DatabaseOperationError("locked"), 0]):
            scheduler.start()
            await asyncio.sleep(0.05)
            assert scheduler.is_running is True

            scheduler.trigger()
            await wait_for(lambda: scheduler.pass_count == 1)

        await scheduler.stop()
        assert scheduler.is_running is False
