"""
Snapshot ingestion: hash each new camera image, record it, and queue it for
analysis only when its content differs from the previous snapshot of the
same source.
"""

import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from database_manager import DatabaseManager
from job_queue import DetectionQueue
from models import Snapshot

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 64 * 1024


def compute_content_hash(file_path: Union[str, Path]) -> str:
    """MD5 of the file contents, read in chunks."""
    digest = hashlib.md5()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


class SnapshotIngestor:
    """Writes snapshot rows and enqueues changed snapshots."""

    def __init__(self, database: DatabaseManager, queue: DetectionQueue):
        self.database = database
        self.queue = queue

    def ingest(self, source_id: str, file_path: Union[str, Path],
               captured_at: Optional[datetime] = None,
               analysis_enabled: bool = True,
               image_path: Optional[Union[str, Path]] = None) -> Snapshot:
        """
        Record a captured image.

        Args:
            source_id: Camera or feed identifier
            file_path: Path stored on the snapshot (relative to the image directory or absolute)
            captured_at: Capture time, defaults to now
            analysis_enabled: When False a changed snapshot is registered as pending, not queued
            image_path: Where to read the file for hashing, if different from file_path

        Returns:
            The stored Snapshot
        """
        content_hash = compute_content_hash(image_path or file_path)
        previous = self.database.get_latest_snapshot(source_id)
        previous_hash = previous.content_hash if previous else None
        changed = previous_hash != content_hash

        snapshot = self.database.insert_snapshot(
            source_id=source_id,
            file_path=file_path,
            content_hash=content_hash,
            previous_hash=previous_hash,
            changed=changed,
            captured_at=captured_at,
        )

        if not changed:
            logger.info(f"Snapshot {snapshot.id} from {source_id} unchanged, skipping analysis")
        elif analysis_enabled:
            self.queue.enqueue(snapshot)
        else:
            self.queue.register(snapshot)
            logger.info(f"Snapshot {snapshot.id} from {source_id} changed, "
                        f"analysis disabled for this source")
        return snapshot
