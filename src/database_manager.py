import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterator

from config import Config
from exceptions import DatabaseConnectionError, DatabaseOperationError
from models import (
    Snapshot, DetectionRecord, BoundingBox, DetectionStats, DetectionStatus, ErrorKind
)

logger = logging.getLogger(__name__)

# Taxonomy category -> detections table column
CATEGORY_COLUMNS = {
    "cars": "cars",
    "trucks": "trucks",
    "buses": "buses",
    "emergency_vehicles": "emergency",
    "construction_vehicles": "construction",
    "other_vehicles": "other",
}

TIME_RANGES = {
    '1h': timedelta(hours=1),
    '24h': timedelta(hours=24),
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
    'all': None,
}

DETECTION_COLUMNS = (
    "id, snapshot_id, source_id, status, total_boxes, "
    + ", ".join(CATEGORY_COLUMNS.values())
    + ", confidence_score, retry_count, last_retry_at, error_kind, last_error, "
    "claimed_at, processed_at, created_at"
)


def format_timestamp(value: Optional[datetime] = None) -> str:
    """Timestamps are stored as sortable ISO strings with microseconds."""
    return (value or datetime.now()).isoformat(sep=' ', timespec='microseconds')


def parse_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def row_to_snapshot(row: sqlite3.Row) -> Snapshot:
    return Snapshot(
        id=row['id'],
        source_id=row['source_id'],
        file_path=row['file_path'],
        content_hash=row['content_hash'],
        previous_hash=row['previous_hash'],
        changed=bool(row['changed']),
        captured_at=parse_timestamp(row['captured_at']),
    )


def row_to_detection(row: sqlite3.Row) -> DetectionRecord:
    return DetectionRecord(
        id=row['id'],
        snapshot_id=row['snapshot_id'],
        source_id=row['source_id'],
        status=DetectionStatus(row['status']),
        total_boxes=row['total_boxes'],
        counts_by_category={
            category: row[column] for category, column in CATEGORY_COLUMNS.items()
        },
        confidence_score=row['confidence_score'],
        retry_count=row['retry_count'],
        last_retry_at=parse_timestamp(row['last_retry_at']),
        error_kind=ErrorKind(row['error_kind']) if row['error_kind'] else None,
        last_error=row['last_error'],
        claimed_at=parse_timestamp(row['claimed_at']),
        processed_at=parse_timestamp(row['processed_at']),
        created_at=parse_timestamp(row['created_at']),
    )


def row_to_bounding_box(row: sqlite3.Row) -> BoundingBox:
    return BoundingBox(
        id=row['id'],
        detection_id=row['detection_id'],
        snapshot_id=row['snapshot_id'],
        category=row['category'],
        vehicle_type=row['vehicle_type'],
        x_min=row['x_min'],
        y_min=row['y_min'],
        x_max=row['x_max'],
        y_max=row['y_max'],
        confidence=row['confidence'],
        is_valid=bool(row['is_valid']),
        created_at=parse_timestamp(row['created_at']),
    )


class DatabaseManager:
    """
    SQLite storage for snapshots, detection records and bounding boxes.

    The detections table is the job queue's source of truth (see job_queue);
    this class owns the schema, connection handling and the read-side queries
    used by dashboards.
    """

    def __init__(self, config: Config, busy_timeout: float = 30.0):
        self.config = config
        self.busy_timeout = busy_timeout
        # Ensure database path is absolute to avoid path resolution issues
        self.db_path = str(Path(config.storage.database_path).resolve())
        self.init_database()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection in autocommit mode with foreign keys enforced."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside a write transaction.

        BEGIN IMMEDIATE takes the write lock up front, so read-then-write
        sequences inside the block cannot interleave with another writer.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def init_database(self):
        """Initialize SQLite database with required tables"""
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            with self.connection() as conn:
                conn.execute("PRAGMA journal_mode = WAL")

                conn.execute('''
                    CREATE TABLE IF NOT EXISTS snapshots (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        source_id TEXT NOT NULL,
                        file_path TEXT NOT NULL,
                        content_hash TEXT NOT NULL,
                        previous_hash TEXT,
                        changed BOOLEAN NOT NULL DEFAULT 1,
                        captured_at DATETIME NOT NULL,
                        created_at DATETIME NOT NULL
                    )
                ''')

                category_columns = ",\n".join(
                    f"{column} INTEGER NOT NULL DEFAULT 0" for column in CATEGORY_COLUMNS.values()
                )
                conn.execute(f'''
                    CREATE TABLE IF NOT EXISTS detections (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        snapshot_id INTEGER NOT NULL UNIQUE
                            REFERENCES snapshots(id) ON DELETE CASCADE,
                        source_id TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'queued', 'processing',
                                              'completed', 'failed')),
                        total_boxes INTEGER NOT NULL DEFAULT 0,
                        {category_columns},
                        confidence_score REAL NOT NULL DEFAULT 0.0,
                        retry_count INTEGER NOT NULL DEFAULT 0,
                        last_retry_at DATETIME,
                        error_kind TEXT,
                        last_error TEXT,
                        claim_token TEXT,
                        claimed_at DATETIME,
                        processed_at DATETIME,
                        created_at DATETIME NOT NULL
                    )
                ''')

                conn.execute('''
                    CREATE TABLE IF NOT EXISTS bounding_boxes (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        detection_id INTEGER NOT NULL
                            REFERENCES detections(id) ON DELETE CASCADE,
                        snapshot_id INTEGER NOT NULL
                            REFERENCES snapshots(id) ON DELETE CASCADE,
                        category TEXT NOT NULL,
                        vehicle_type TEXT NOT NULL,
                        x_min REAL NOT NULL,
                        y_min REAL NOT NULL,
                        x_max REAL NOT NULL,
                        y_max REAL NOT NULL,
                        confidence REAL NOT NULL DEFAULT 0.0,
                        is_valid BOOLEAN NOT NULL DEFAULT 1,
                        created_at DATETIME NOT NULL
                    )
                ''')

                # Create indexes for performance
                conn.execute('''
                    CREATE INDEX IF NOT EXISTS idx_snapshots_source
                    ON snapshots(source_id, created_at)
                ''')
                conn.execute('''
                    CREATE INDEX IF NOT EXISTS idx_detections_status
                    ON detections(status, created_at)
                ''')
                conn.execute('''
                    CREATE INDEX IF NOT EXISTS idx_detections_source
                    ON detections(source_id)
                ''')
                conn.execute('''
                    CREATE INDEX IF NOT EXISTS idx_bounding_boxes_detection
                    ON bounding_boxes(detection_id)
                ''')

                logger.info(f"Database initialized successfully at {self.db_path}")
        except (sqlite3.Error, OSError) as e:
            raise DatabaseConnectionError(f"Failed to initialize database: {e}") from e

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def insert_snapshot(self, source_id: str, file_path, content_hash: str,
                        previous_hash: Optional[str], changed: bool,
                        captured_at: Optional[datetime] = None) -> Snapshot:
        """Write an immutable snapshot row"""
        captured_at = captured_at or datetime.now()
        try:
            with self.connection() as conn:
                cursor = conn.execute('''
                    INSERT INTO snapshots
                    (source_id, file_path, content_hash, previous_hash, changed,
                     captured_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                ''', (source_id, str(file_path), content_hash, previous_hash, changed,
                      format_timestamp(captured_at), format_timestamp()))
                return Snapshot(
                    id=cursor.lastrowid,
                    source_id=source_id,
                    file_path=str(file_path),
                    content_hash=content_hash,
                    previous_hash=previous_hash,
                    changed=changed,
                    captured_at=captured_at,
                )
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to insert snapshot: {e}") from e

    def get_snapshot(self, snapshot_id: int) -> Optional[Snapshot]:
        try:
            with self.connection() as conn:
                row = conn.execute(
                    'SELECT * FROM snapshots WHERE id = ?', (snapshot_id,)
                ).fetchone()
                return row_to_snapshot(row) if row else None
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get snapshot {snapshot_id}: {e}") from e

    def get_latest_snapshot(self, source_id: str) -> Optional[Snapshot]:
        """Most recently written snapshot for a source"""
        try:
            with self.connection() as conn:
                row = conn.execute('''
                    SELECT * FROM snapshots
                    WHERE source_id = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT 1
                ''', (source_id,)).fetchone()
                return row_to_snapshot(row) if row else None
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get latest snapshot: {e}") from e

    def purge_snapshots(self, days_to_keep: int) -> List[str]:
        """
        Delete snapshots older than the retention window.

        Detection records and bounding boxes go with them (ON DELETE CASCADE).
        Returns the file paths of the purged snapshots so the caller can
        remove the image files.
        """
        cutoff = format_timestamp(datetime.now() - timedelta(days=days_to_keep))
        try:
            with self.transaction() as conn:
                rows = conn.execute(
                    'SELECT file_path FROM snapshots WHERE created_at < ?', (cutoff,)
                ).fetchall()
                conn.execute('DELETE FROM snapshots WHERE created_at < ?', (cutoff,))
            file_paths = [row['file_path'] for row in rows]
            logger.info(f"Purged {len(file_paths)} snapshots older than {days_to_keep} days")
            return file_paths
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to purge snapshots: {e}") from e

    # -------------------------------------------------------------------------
    # Detection records and boxes (read side)
    # -------------------------------------------------------------------------

    def get_detection(self, detection_id: int) -> Optional[DetectionRecord]:
        try:
            with self.connection() as conn:
                row = conn.execute(
                    f'SELECT {DETECTION_COLUMNS} FROM detections WHERE id = ?', (detection_id,)
                ).fetchone()
                return row_to_detection(row) if row else None
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get detection {detection_id}: {e}") from e

    def get_detection_for_snapshot(self, snapshot_id: int) -> Optional[DetectionRecord]:
        try:
            with self.connection() as conn:
                row = conn.execute(
                    f'SELECT {DETECTION_COLUMNS} FROM detections WHERE snapshot_id = ?',
                    (snapshot_id,)
                ).fetchone()
                return row_to_detection(row) if row else None
        except sqlite3.Error as e:
            raise DatabaseOperationError(
                f"Failed to get detection for snapshot {snapshot_id}: {e}") from e

    def get_bounding_boxes(self, detection_id: int, valid_only: bool = False) -> List[BoundingBox]:
        query = 'SELECT * FROM bounding_boxes WHERE detection_id = ?'
        if valid_only:
            query += ' AND is_valid = 1'
        query += ' ORDER BY id'
        try:
            with self.connection() as conn:
                rows = conn.execute(query, (detection_id,)).fetchall()
                return [row_to_bounding_box(row) for row in rows]
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get bounding boxes: {e}") from e

    def get_detection_stats(self, source_id: Optional[str] = None,
                            time_range: str = '24h') -> DetectionStats:
        """
        Aggregate figures over detection records created within time_range.

        avg_confidence and total_detected only consider completed records.
        """
        if time_range not in TIME_RANGES:
            raise ValueError(f"Unknown time range {time_range!r}, "
                             f"expected one of {', '.join(TIME_RANGES)}")

        conditions = []
        params: List[Any] = []
        if source_id:
            conditions.append('source_id = ?')
            params.append(source_id)
        window = TIME_RANGES[time_range]
        if window is not None:
            conditions.append('created_at >= ?')
            params.append(format_timestamp(datetime.now() - window))
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ''

        try:
            with self.connection() as conn:
                row = conn.execute(f'''
                    SELECT
                        COUNT(*) AS total,
                        COUNT(CASE WHEN status = 'completed' THEN 1 END) AS completed,
                        COUNT(CASE WHEN status = 'failed' THEN 1 END) AS failed,
                        COUNT(CASE WHEN status = 'queued' THEN 1 END) AS queued,
                        COUNT(CASE WHEN status = 'processing' THEN 1 END) AS processing,
                        AVG(CASE WHEN status = 'completed' THEN confidence_score END)
                            AS avg_confidence,
                        SUM(CASE WHEN status = 'completed' THEN total_boxes ELSE 0 END)
                            AS total_detected
                    FROM detections
                    {where_clause}
                ''', params).fetchone()
                return DetectionStats(
                    total=row['total'],
                    completed=row['completed'],
                    failed=row['failed'],
                    queued=row['queued'],
                    processing=row['processing'],
                    avg_confidence=row['avg_confidence'] or 0.0,
                    total_detected=row['total_detected'] or 0,
                )
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get detection stats: {e}") from e

    def get_recent_detections(self, limit: int = 20, offset: int = 0,
                              source_id: Optional[str] = None) -> List[DetectionRecord]:
        """Most recently completed detection records"""
        query = f"SELECT {DETECTION_COLUMNS} FROM detections WHERE status = 'completed'"
        params: List[Any] = []
        if source_id:
            query += ' AND source_id = ?'
            params.append(source_id)
        query += ' ORDER BY processed_at DESC, id DESC LIMIT ? OFFSET ?'
        params.extend([limit, offset])
        try:
            with self.connection() as conn:
                rows = conn.execute(query, params).fetchall()
                return [row_to_detection(row) for row in rows]
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get recent detections: {e}") from e

    def get_detection_trends(self, days: int = 7) -> List[Dict[str, Any]]:
        """Daily totals of completed detections, newest day first"""
        cutoff = format_timestamp(datetime.now() - timedelta(days=days))
        category_sums = ", ".join(
            f"SUM({column}) AS total_{category}" for category, column in CATEGORY_COLUMNS.items()
        )
        try:
            with self.connection() as conn:
                rows = conn.execute(f'''
                    SELECT
                        DATE(processed_at) AS date,
                        COUNT(*) AS images_analyzed,
                        SUM(total_boxes) AS total_vehicles,
                        AVG(total_boxes) AS avg_vehicles_per_image,
                        {category_sums}
                    FROM detections
                    WHERE status = 'completed' AND processed_at >= ?
                    GROUP BY DATE(processed_at)
                    ORDER BY date DESC
                ''', (cutoff,)).fetchall()
                return [dict(row) for row in rows]
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get detection trends: {e}") from e
