"""
Durable analysis job queue backed by the detections table.

There is no in-memory queue: every call reads and writes the detection rows
directly, so the queue survives restarts and is safe to share between
processes. Status transitions are single-statement conditional updates.

    pending -> queued -> processing -> completed | failed
    completed | failed -> queued      (re-enqueue or manual retry)
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import List, Sequence, Union

from database_manager import CATEGORY_COLUMNS, DatabaseManager, format_timestamp, parse_timestamp
from exceptions import DatabaseOperationError, DetectionNotFoundError, InvalidStateTransition
from models import (
    AggregationResult, AnalysisJob, DetectionStatus, ErrorKind, NormalizedBox, QueueStatus,
    Snapshot,
)

logger = logging.getLogger(__name__)

SnapshotRef = Union[Snapshot, dict]

RESET_CLAIM = "claim_token = NULL, claimed_at = NULL"
CLEAR_ERRORS = "error_kind = NULL, last_error = NULL"


def _snapshot_fields(snapshot: SnapshotRef):
    if isinstance(snapshot, Snapshot):
        return snapshot.id, snapshot.source_id
    return snapshot['id'], snapshot['source_id']


class DetectionQueue:
    """Job queue operations over the detections table."""

    def __init__(self, database: DatabaseManager):
        self.database = database

    # -------------------------------------------------------------------------
    # Producers
    # -------------------------------------------------------------------------

    def enqueue(self, snapshot: SnapshotRef) -> bool:
        """
        Queue a snapshot for analysis.

        Creates the detection record if the snapshot has none; otherwise the
        existing record is reset to queued whatever its state. Bounding boxes
        from an earlier analysis stay until new ones replace them, and
        retry_count is left as it is.

        Returns False if the record could not be written.
        """
        snapshot_id, source_id = _snapshot_fields(snapshot)
        try:
            with self.database.connection() as conn:
                conn.execute(f'''
                    INSERT INTO detections (snapshot_id, source_id, status, created_at)
                    VALUES (?, ?, 'queued', ?)
                    ON CONFLICT(snapshot_id) DO UPDATE SET
                        status = 'queued',
                        processed_at = NULL,
                        {RESET_CLAIM},
                        {CLEAR_ERRORS}
                ''', (snapshot_id, source_id, format_timestamp()))
            logger.info(f"Queued snapshot {snapshot_id} from {source_id} for analysis")
            return True
        except sqlite3.Error as e:
            logger.error(f"Failed to queue snapshot {snapshot_id}: {e}")
            return False

    def register(self, snapshot: SnapshotRef) -> bool:
        """
        Record a snapshot as pending without queueing it.

        Used for sources with analysis disabled; a later enqueue() picks the
        record up. An existing record is left untouched.
        """
        snapshot_id, source_id = _snapshot_fields(snapshot)
        try:
            with self.database.connection() as conn:
                conn.execute('''
                    INSERT OR IGNORE INTO detections (snapshot_id, source_id, status, created_at)
                    VALUES (?, ?, 'pending', ?)
                ''', (snapshot_id, source_id, format_timestamp()))
            return True
        except sqlite3.Error as e:
            logger.error(f"Failed to register snapshot {snapshot_id}: {e}")
            return False

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def dequeue_batch(self, limit: int) -> List[AnalysisJob]:
        """
        Claim up to `limit` queued records, oldest first.

        The claim is a single UPDATE inside a write transaction and is tagged
        with a fresh claim token, so two concurrent callers never receive the
        same record.
        """
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")

        claim_token = uuid.uuid4().hex
        try:
            with self.database.transaction() as conn:
                conn.execute('''
                    UPDATE detections
                    SET status = 'processing', claim_token = ?, claimed_at = ?
                    WHERE id IN (
                        SELECT id FROM detections
                        WHERE status = 'queued'
                        ORDER BY created_at ASC, id ASC
                        LIMIT ?
                    )
                ''', (claim_token, format_timestamp(), limit))
                rows = conn.execute('''
                    SELECT d.id, d.snapshot_id, d.source_id, d.retry_count, d.created_at,
                           s.file_path
                    FROM detections d
                    JOIN snapshots s ON s.id = d.snapshot_id
                    WHERE d.claim_token = ?
                    ORDER BY d.created_at ASC, d.id ASC
                ''', (claim_token,)).fetchall()
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to dequeue batch: {e}") from e

        jobs = [
            AnalysisJob(
                detection_id=row['id'],
                snapshot_id=row['snapshot_id'],
                source_id=row['source_id'],
                file_path=row['file_path'],
                claim_token=claim_token,
                retry_count=row['retry_count'],
                created_at=parse_timestamp(row['created_at']),
            )
            for row in rows
        ]
        if jobs:
            logger.info(f"Claimed {len(jobs)} detection records for processing")
        return jobs

    def record_retry(self, job: AnalysisJob, kind: ErrorKind, message: str) -> bool:
        """
        Note a failed attempt that will be retried. The record stays processing.

        Returns False if the claim is no longer ours.
        """
        try:
            with self.database.connection() as conn:
                cursor = conn.execute('''
                    UPDATE detections
                    SET retry_count = retry_count + 1, last_retry_at = ?,
                        error_kind = ?, last_error = ?
                    WHERE id = ? AND status = 'processing' AND claim_token = ?
                ''', (format_timestamp(), kind.value, message,
                      job.detection_id, job.claim_token))
                updated = cursor.rowcount == 1
        except sqlite3.Error as e:
            raise DatabaseOperationError(
                f"Failed to record retry for detection {job.detection_id}: {e}") from e

        if updated:
            job.retry_count += 1
        return updated

    def complete(self, job: AnalysisJob, aggregation: AggregationResult,
                 boxes: Sequence[NormalizedBox]) -> bool:
        """
        Write a successful analysis: counts, confidence and every box.

        Previous boxes for the record are replaced in the same transaction.
        Returns False, writing nothing, if the record was re-enqueued or
        reclaimed while the analysis was in flight.
        """
        counts = aggregation.counts_by_category
        count_assignments = ", ".join(f"{column} = ?" for column in CATEGORY_COLUMNS.values())
        now = format_timestamp()
        try:
            with self.database.transaction() as conn:
                cursor = conn.execute(f'''
                    UPDATE detections
                    SET status = 'completed', total_boxes = ?, {count_assignments},
                        confidence_score = ?, processed_at = ?, claim_token = NULL,
                        {CLEAR_ERRORS}
                    WHERE id = ? AND status = 'processing' AND claim_token = ?
                ''', (aggregation.total_boxes,
                      *[counts.get(category, 0) for category in CATEGORY_COLUMNS],
                      aggregation.confidence_score, now,
                      job.detection_id, job.claim_token))
                if cursor.rowcount != 1:
                    return False

                conn.execute('DELETE FROM bounding_boxes WHERE detection_id = ?',
                             (job.detection_id,))
                conn.executemany('''
                    INSERT INTO bounding_boxes
                    (detection_id, snapshot_id, category, vehicle_type,
                     x_min, y_min, x_max, y_max, confidence, is_valid, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', [(job.detection_id, job.snapshot_id, box.category, box.vehicle_type,
                       box.x_min, box.y_min, box.x_max, box.y_max, box.confidence,
                       box.is_valid, now)
                      for box in boxes])
            return True
        except sqlite3.Error as e:
            raise DatabaseOperationError(
                f"Failed to complete detection {job.detection_id}: {e}") from e

    def fail(self, job: AnalysisJob, kind: ErrorKind, message: str) -> bool:
        """
        Mark a claimed record failed. Counts are zeroed and boxes removed.

        Returns False if the claim is no longer ours.
        """
        zero_counts = ", ".join(f"{column} = 0" for column in CATEGORY_COLUMNS.values())
        try:
            with self.database.transaction() as conn:
                cursor = conn.execute(f'''
                    UPDATE detections
                    SET status = 'failed', total_boxes = 0, {zero_counts},
                        confidence_score = 0.0, error_kind = ?, last_error = ?,
                        processed_at = ?, claim_token = NULL
                    WHERE id = ? AND status = 'processing' AND claim_token = ?
                ''', (kind.value, message, format_timestamp(),
                      job.detection_id, job.claim_token))
                if cursor.rowcount != 1:
                    return False
                conn.execute('DELETE FROM bounding_boxes WHERE detection_id = ?',
                             (job.detection_id,))
            return True
        except sqlite3.Error as e:
            raise DatabaseOperationError(
                f"Failed to mark detection {job.detection_id} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def retry_failed(self, detection_id: int) -> bool:
        """Manually re-queue a failed record. retry_count is not incremented."""
        try:
            with self.database.transaction() as conn:
                row = conn.execute('SELECT status FROM detections WHERE id = ?',
                                   (detection_id,)).fetchone()
                if row is None:
                    raise DetectionNotFoundError(f"Detection {detection_id} not found")
                if row['status'] != DetectionStatus.FAILED.value:
                    raise InvalidStateTransition(
                        f"Detection {detection_id} is {row['status']}, "
                        f"only failed detections can be retried")
                conn.execute(f'''
                    UPDATE detections
                    SET status = 'queued', processed_at = NULL, {RESET_CLAIM}, {CLEAR_ERRORS}
                    WHERE id = ?
                ''', (detection_id,))
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to retry detection {detection_id}: {e}") from e

        logger.info(f"Detection {detection_id} re-queued for manual retry")
        return True

    def reclaim_stuck(self, timeout_minutes: int) -> int:
        """Return records processing for longer than the timeout to the queue."""
        cutoff = format_timestamp(datetime.now() - timedelta(minutes=timeout_minutes))
        try:
            with self.database.connection() as conn:
                cursor = conn.execute(f'''
                    UPDATE detections
                    SET status = 'queued', {RESET_CLAIM}
                    WHERE status = 'processing'
                      AND (claimed_at IS NULL OR claimed_at < ?)
                ''', (cutoff,))
                reclaimed = cursor.rowcount
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to reclaim stuck detections: {e}") from e

        if reclaimed:
            logger.warning(f"Reclaimed {reclaimed} detections stuck in processing "
                           f"for more than {timeout_minutes} minutes")
        return reclaimed

    def reset_all_processing(self) -> int:
        """Emergency reset: every processing record goes back to queued."""
        try:
            with self.database.connection() as conn:
                cursor = conn.execute(f'''
                    UPDATE detections
                    SET status = 'queued', {RESET_CLAIM}
                    WHERE status = 'processing'
                ''')
                reset = cursor.rowcount
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to reset processing detections: {e}") from e

        logger.warning(f"Reset {reset} processing detections to queued")
        return reset

    def queue_missing_boxes(self, limit: int = 10) -> int:
        """Re-queue completed records that report boxes but have no box rows."""
        try:
            with self.database.transaction() as conn:
                cursor = conn.execute(f'''
                    UPDATE detections
                    SET status = 'queued', processed_at = NULL, {RESET_CLAIM}
                    WHERE id IN (
                        SELECT d.id FROM detections d
                        WHERE d.status = 'completed' AND d.total_boxes > 0
                          AND NOT EXISTS (
                              SELECT 1 FROM bounding_boxes b WHERE b.detection_id = d.id
                          )
                        ORDER BY d.processed_at DESC
                        LIMIT ?
                    )
                ''', (limit,))
                queued = cursor.rowcount
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to queue detections missing boxes: {e}") from e

        if queued:
            logger.info(f"Queued {queued} completed detections with missing bounding boxes")
        return queued

    def get_queue_status(self) -> QueueStatus:
        try:
            with self.database.connection() as conn:
                rows = conn.execute('''
                    SELECT status, COUNT(*) AS count FROM detections GROUP BY status
                ''').fetchall()
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get queue status: {e}") from e

        status = QueueStatus()
        for row in rows:
            setattr(status, row['status'], row['count'])
        return status
