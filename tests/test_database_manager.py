"""
Unit tests for database management system.
"""

import pytest
import sqlite3
import shutil
from datetime import datetime, timedelta
from unittest.mock import patch

import sys
sys.path.append('src')

from aggregator import aggregate
from config import Config
from coordinates import normalize_boxes
from database_manager import DatabaseManager, format_timestamp, parse_timestamp
from exceptions import DatabaseConnectionError, DatabaseError
from job_queue import DetectionQueue
from models import DetectionStatus, ErrorKind, ParsedBox


def make_boxes(*rows):
    return normalize_boxes([ParsedBox(*row) for row in rows])


class TestTimestamps:
    """Test timestamp storage format."""

    def test_round_trip_keeps_microseconds(self):
        moment = datetime(2025, 1, 4, 12, 0, 0, 123456)
        assert parse_timestamp(format_timestamp(moment)) == moment

    def test_sortable_as_text(self):
        earlier = format_timestamp(datetime(2025, 1, 4, 9, 0, 0))
        later = format_timestamp(datetime(2025, 1, 4, 10, 0, 0))
        assert earlier < later

    def test_parse_none(self):
        assert parse_timestamp(None) is None


class TestDatabaseManager:
    """Test database management functionality."""

    def setup_method(self):
        """Set up test database."""
        self.config = Config.create_test_config()
        self.db_path = self.config.storage.database_path
        self.database = DatabaseManager(self.config)
        self.queue = DetectionQueue(self.database)

    def teardown_method(self):
        """Clean up test database."""
        shutil.rmtree(self.config.storage.data_dir, ignore_errors=True)

    def add_snapshot(self, source_id="cam-1", name="a.jpg", content_hash="hash"):
        return self.database.insert_snapshot(source_id, name, content_hash, None, True)

    def test_database_initialization(self):
        """Test database and table creation."""
        assert self.db_path.exists()

        with sqlite3.connect(self.db_path) as conn:
            tables = [row[0] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'")]
            journal_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]

        assert 'snapshots' in tables
        assert 'detections' in tables
        assert 'bounding_boxes' in tables
        assert journal_mode == 'wal'

    def test_detection_columns(self):
        with sqlite3.connect(self.db_path) as conn:
            columns = {row[1] for row in conn.execute("PRAGMA table_info(detections)")}

        for column in ('cars', 'trucks', 'buses', 'emergency', 'construction', 'other',
                       'confidence_score', 'retry_count', 'last_retry_at', 'processed_at',
                       'claim_token', 'claimed_at', 'error_kind', 'last_error'):
            assert column in columns

    def test_initialization_failure(self):
        with patch('database_manager.sqlite3.connect',
                   side_effect=sqlite3.OperationalError("unable to open database file")):
            with pytest.raises(DatabaseConnectionError, match="Failed to initialize database"):
                DatabaseManager(self.config)

    def test_reinitialization_keeps_data(self):
        snapshot = self.add_snapshot()
        DatabaseManager(self.config)
        assert self.database.get_snapshot(snapshot.id) is not None

    def test_status_constraint(self):
        snapshot = self.add_snapshot()
        with sqlite3.connect(self.db_path) as conn:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute('''
                    INSERT INTO detections (snapshot_id, source_id, status, created_at)
                    VALUES (?, 'cam-1', 'lost', ?)
                ''', (snapshot.id, format_timestamp()))

    def test_insert_and_get_snapshot(self):
        captured_at = datetime(2025, 1, 4, 12, 0, 0)
        snapshot = self.database.insert_snapshot(
            "cam-1", "cam-1/a.jpg", "abc", "xyz", True, captured_at=captured_at
        )

        stored = self.database.get_snapshot(snapshot.id)
        assert stored.source_id == "cam-1"
        assert stored.file_path == "cam-1/a.jpg"
        assert stored.content_hash == "abc"
        assert stored.previous_hash == "xyz"
        assert stored.changed is True
        assert stored.captured_at == captured_at

    def test_get_missing_snapshot(self):
        assert self.database.get_snapshot(999) is None
        assert self.database.get_latest_snapshot("nobody") is None

    def test_latest_snapshot_per_source(self):
        self.add_snapshot("cam-1", "1.jpg", "h1")
        second = self.add_snapshot("cam-1", "2.jpg", "h2")
        self.add_snapshot("cam-2", "3.jpg", "h3")

        latest = self.database.get_latest_snapshot("cam-1")
        assert latest.id == second.id
        assert latest.content_hash == "h2"

    def test_get_detection_for_snapshot(self):
        snapshot = self.add_snapshot()
        self.queue.enqueue(snapshot)

        record = self.database.get_detection_for_snapshot(snapshot.id)
        assert record.status == DetectionStatus.QUEUED
        assert record.source_id == "cam-1"
        assert record.counts_by_category['cars'] == 0
        assert self.database.get_detection(record.id).snapshot_id == snapshot.id

    def test_get_bounding_boxes_valid_only(self):
        snapshot = self.add_snapshot()
        self.queue.enqueue(snapshot)
        job = self.queue.dequeue_batch(1)[0]
        boxes = make_boxes(("car", 100, 100, 300, 300, 0.9), ("car", 500, 100, 200, 150, 0.5))
        self.queue.complete(job, aggregate(boxes), boxes)

        assert len(self.database.get_bounding_boxes(job.detection_id)) == 2
        valid = self.database.get_bounding_boxes(job.detection_id, valid_only=True)
        assert len(valid) == 1
        assert valid[0].category == "cars"
        assert valid[0].snapshot_id == snapshot.id

    def test_detection_stats(self):
        snapshots = [self.add_snapshot(name=f"{i}.jpg", content_hash=f"h{i}") for i in range(3)]
        for snapshot in snapshots:
            self.queue.enqueue(snapshot)
        first, second = self.queue.dequeue_batch(2)

        boxes = make_boxes(("sedan", 100, 100, 300, 300, 0.8), ("truck", 400, 400, 600, 600, 0.6))
        self.queue.complete(first, aggregate(boxes), boxes)
        self.queue.fail(second, ErrorKind.MALFORMED_RESPONSE, "not json")

        stats = self.database.get_detection_stats()
        assert stats.total == 3
        assert stats.completed == 1
        assert stats.failed == 1
        assert stats.queued == 1
        assert stats.processing == 0
        assert stats.avg_confidence == pytest.approx(0.7)
        assert stats.total_detected == 2

    def test_detection_stats_filter_by_source(self):
        self.queue.enqueue(self.add_snapshot("cam-1", "1.jpg", "h1"))
        self.queue.enqueue(self.add_snapshot("cam-2", "2.jpg", "h2"))

        stats = self.database.get_detection_stats(source_id="cam-2", time_range="all")
        assert stats.total == 1
        assert stats.avg_confidence == 0.0
        assert stats.to_dict()['queued'] == 1

    def test_detection_stats_time_range(self):
        snapshot = self.add_snapshot()
        self.queue.enqueue(snapshot)
        old = format_timestamp(datetime.now() - timedelta(days=2))
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("UPDATE detections SET created_at = ?", (old,))

        assert self.database.get_detection_stats(time_range="24h").total == 0
        assert self.database.get_detection_stats(time_range="7d").total == 1

    def test_detection_stats_invalid_range(self):
        with pytest.raises(ValueError, match="Unknown time range"):
            self.database.get_detection_stats(time_range="1y")

    def test_recent_detections_and_trends(self):
        for i in range(3):
            self.queue.enqueue(self.add_snapshot(name=f"{i}.jpg", content_hash=f"h{i}"))
        for job in self.queue.dequeue_batch(3):
            boxes = make_boxes(("bus", 100, 100, 300, 300, 0.9))
            self.queue.complete(job, aggregate(boxes), boxes)

        recent = self.database.get_recent_detections(limit=2)
        assert len(recent) == 2
        assert all(record.status == DetectionStatus.COMPLETED for record in recent)
        assert recent[0].processed_at >= recent[1].processed_at

        trends = self.database.get_detection_trends(days=1)
        assert len(trends) == 1
        assert trends[0]['images_analyzed'] == 3
        assert trends[0]['total_buses'] == 3

    def test_purge_snapshots_cascades(self):
        old_snapshot = self.add_snapshot(name="old.jpg", content_hash="h1")
        new_snapshot = self.add_snapshot(name="new.jpg", content_hash="h2")
        self.queue.enqueue(old_snapshot)
        self.queue.enqueue(new_snapshot)
        job = [j for j in self.queue.dequeue_batch(2) if j.snapshot_id == old_snapshot.id][0]
        boxes = make_boxes(("car", 100, 100, 300, 300, 0.9))
        self.queue.complete(job, aggregate(boxes), boxes)

        old = format_timestamp(datetime.now() - timedelta(days=40))
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("UPDATE snapshots SET created_at = ? WHERE id = ?", (old, old_snapshot.id))

        purged = self.database.purge_snapshots(30)

        assert purged == ["old.jpg"]
        assert self.database.get_snapshot(old_snapshot.id) is None
        assert self.database.get_detection(job.detection_id) is None
        assert self.database.get_bounding_boxes(job.detection_id) == []
        assert self.database.get_snapshot(new_snapshot.id) is not None

    def test_operation_errors_are_database_errors(self):
        with patch.object(self.database, 'connection',
                          side_effect=sqlite3.OperationalError("database is locked")):
            with pytest.raises(DatabaseError):
                self.database.get_snapshot(1)
