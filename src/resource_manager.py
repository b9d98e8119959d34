"""
Resource management for the traffic analysis pipeline.

Consolidates memory monitoring, snapshot file storage and system status
into one module. The scheduler consults SystemMonitor before each pass.
"""

import gc
import logging
import psutil
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Union

from config import Config

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {'.jpg', '.jpeg', '.png', '.webp'}


class MemoryManager:
    """Memory headroom for analysis passes, checked against the configured threshold."""

    def __init__(self, config: Config):
        self.memory_threshold = config.performance.memory_threshold

    def get_memory_usage(self) -> float:
        """Current memory usage as a ratio (0.0 to 1.0); 0.5 if it cannot be read."""
        try:
            return psutil.virtual_memory().percent / 100.0
        except Exception as e:
            logger.error(f"Error getting memory usage: {e}")
            return 0.5

    def is_memory_available(self) -> bool:
        return self.get_memory_usage() < self.memory_threshold

    def release_memory(self) -> int:
        """Collect garbage left behind by decoded images and responses. Returns objects freed."""
        freed = gc.collect()
        logger.debug(f"Garbage collection freed {freed} objects")
        return freed

    def get_memory_info(self) -> Optional[dict]:
        try:
            mem = psutil.virtual_memory()
            return {
                'percent': mem.percent,
                'available_mb': mem.available / (1024 * 1024),
            }
        except Exception as e:
            logger.error(f"Error getting memory info: {e}")
            return None


class StorageManager:
    """Snapshot image files on disk."""

    def __init__(self, config: Config):
        self.config = config

    def ensure_directories(self) -> bool:
        """Ensure all required directories exist."""
        try:
            for directory in (self.config.storage.data_dir,
                              self.config.storage.image_dir,
                              self.config.storage.logs_dir):
                directory.mkdir(parents=True, exist_ok=True)
            return True
        except OSError as e:
            logger.error(f"Error creating directories: {e}")
            return False

    def resolve_image_path(self, file_path: Union[str, Path]) -> Path:
        """Absolute paths are used as-is; relative ones live under the image directory."""
        path = Path(file_path)
        if path.is_absolute():
            return path
        return self.config.storage.image_dir / path

    def load_image(self, file_path: Union[str, Path]) -> Optional[bytes]:
        """Read a snapshot image. Returns None if it is missing or unreadable."""
        path = self.resolve_image_path(file_path)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            logger.error(f"Image file not found: {path}")
            return None
        except OSError as e:
            logger.error(f"Error reading image {path}: {e}")
            return None

    def delete_snapshot_files(self, file_paths: Iterable[Union[str, Path]]) -> int:
        """Delete image files of purged snapshots. Missing files are skipped."""
        deleted = 0
        for file_path in file_paths:
            path = self.resolve_image_path(file_path)
            try:
                path.unlink()
                deleted += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error(f"Error deleting {path}: {e}", exc_info=True)
        if deleted:
            logger.info(f"Deleted {deleted} snapshot image files")
        return deleted

    def get_image_count(self) -> int:
        """Number of image files in the image directory."""
        try:
            return sum(1 for path in self.config.storage.image_dir.rglob('*')
                       if path.suffix.lower() in IMAGE_SUFFIXES)
        except OSError as e:
            logger.error(f"Error counting images: {e}")
            return 0

    def get_storage_info(self) -> Optional[dict]:
        """Get storage space information."""
        try:
            usage = psutil.disk_usage(str(self.config.storage.data_dir))
            return {
                'total_mb': usage.total / (1024 * 1024),
                'used_mb': usage.used / (1024 * 1024),
                'free_mb': usage.free / (1024 * 1024),
                'percent': (usage.used / usage.total) * 100
            }
        except Exception as e:
            logger.error(f"Error getting storage info: {e}")
            return None


class SystemMonitor:
    """
    Resource guard consulted before each analysis pass, plus the status
    figures logged at startup.
    """

    SKIP_REASON_MEMORY = "insufficient_memory"

    def __init__(self, config: Config, storage_manager: Optional[StorageManager] = None):
        self.memory_manager = MemoryManager(config)
        self.storage_manager = storage_manager or StorageManager(config)

    def skip_reason(self) -> Optional[str]:
        """
        Why an analysis pass should not start now, or None if it may.

        When memory is short, garbage is collected before reporting so the
        next pass has a better chance.
        """
        if self.memory_manager.is_memory_available():
            return None
        self.memory_manager.release_memory()
        logger.warning(f"Skipping analysis pass: memory usage above "
                       f"{self.memory_manager.memory_threshold:.0%}")
        return self.SKIP_REASON_MEMORY

    def get_system_status(self) -> dict:
        return {
            'timestamp': datetime.now().isoformat(),
            'memory': self.memory_manager.get_memory_info(),
            'memory_available': self.memory_manager.is_memory_available(),
            'storage': self.storage_manager.get_storage_info(),
            'snapshot_images': self.storage_manager.get_image_count(),
        }

    def log_system_status(self) -> None:
        """Log current system status."""
        status = self.get_system_status()
        if status['memory']:
            logger.info(f"Memory: {status['memory']['percent']:.1f}% used "
                        f"({status['memory']['available_mb']:.0f}MB available)")
        if status['storage']:
            logger.info(f"Storage: {status['storage']['percent']:.1f}% used "
                        f"({status['storage']['free_mb']:.0f}MB free)")
        logger.info(f"Snapshot images on disk: {status['snapshot_images']}")
