#!/usr/bin/env python3
"""
Traffic camera vehicle analysis system.
Wires snapshot ingestion, the detection queue, Gemini inference and the
analysis scheduler together and runs them until interrupted.
"""

import argparse
import asyncio
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from config import Config
from database_manager import DatabaseManager
from job_queue import DetectionQueue
from models import Snapshot
from resource_manager import StorageManager, SystemMonitor
from scheduler import AnalysisScheduler
from snapshot_ingestor import SnapshotIngestor
from vehicle_detector import MockVehicleDetector, VehicleDetector

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE_NAME = 'traffic_analysis.log'
PURGE_INTERVAL = 24 * 60 * 60


def setup_logging(config: Config, level: int = logging.INFO) -> Path:
    """Console logging plus a log file in the configured logs directory."""
    log_path = Path(config.storage.logs_dir) / LOG_FILE_NAME
    logging.basicConfig(level=level, format=LOG_FORMAT)
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)
    # Reduce client library verbosity
    logging.getLogger('google').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    return log_path


class TrafficAnalysisSystem:
    """
    Composition root: every service is built once here and handed to the
    components that need it.
    """

    def __init__(self, config: Optional[Config] = None,
                 detector: Optional[VehicleDetector] = None):
        # Load configuration
        self.config = config or Config()

        # Initialize all components
        self.storage = StorageManager(self.config)
        self.system_monitor = SystemMonitor(self.config, self.storage)
        self.database = DatabaseManager(self.config)
        self.queue = DetectionQueue(self.database)
        self.ingestor = SnapshotIngestor(self.database, self.queue)
        self.detector = detector or VehicleDetector(self.config)
        self.scheduler = AnalysisScheduler(
            self.config, self.queue, self.detector, self.storage, self.system_monitor
        )

        # Setup
        self.storage.ensure_directories()
        self._shutdown: Optional[asyncio.Event] = None

    def ingest_snapshot(self, source_id: str, file_path: Union[str, Path],
                        captured_at: Optional[datetime] = None,
                        analysis_enabled: bool = True) -> Snapshot:
        """Record a snapshot stored under the image directory and queue it if it changed."""
        return self.ingestor.ingest(
            source_id, file_path, captured_at=captured_at, analysis_enabled=analysis_enabled,
            image_path=self.storage.resolve_image_path(file_path),
        )

    def purge_old_snapshots(self) -> int:
        """Delete snapshots past the retention window, their records and image files."""
        days = self.config.performance.snapshot_retention_days
        file_paths = self.database.purge_snapshots(days)
        self.storage.delete_snapshot_files(file_paths)
        return len(file_paths)

    def get_stats(self, source_id: Optional[str] = None, time_range: str = '24h') -> dict:
        """Dashboard figures: detection stats, queue status, scheduler and client state."""
        return {
            'detections': self.database.get_detection_stats(source_id, time_range).to_dict(),
            'queue': self.queue.get_queue_status().to_dict(),
            'scheduler': self.scheduler.get_status(),
            'inference': self.detector.get_statistics(),
        }

    def request_shutdown(self):
        logger.info("Shutdown requested")
        if self._shutdown is not None:
            self._shutdown.set()

    async def run(self):
        """Main loop: run the scheduler and purge old snapshots daily until stopped."""
        logger.info("Traffic Analysis System is running...")
        summary = self.config.get_summary()
        logger.info(f"- Model: {summary['inference']['model']}")
        logger.info(f"- Interval: {summary['scheduler']['interval_seconds']}s, "
                    f"batch size: {summary['scheduler']['batch_size']}, "
                    f"concurrency: {summary['scheduler']['max_concurrent_requests']}")
        logger.info(f"- Retries: {summary['scheduler']['max_retries']} "
                    f"(rate limit delay {summary['scheduler']['rate_limit_delay']}s)")
        logger.info(f"- Database: {self.database.db_path}")

        # Log initial system status
        self.system_monitor.log_system_status()

        self._shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                # Not supported on Windows
                pass

        self.scheduler.start()
        try:
            while not self._shutdown.is_set():
                try:
                    purged = await loop.run_in_executor(None, self.purge_old_snapshots)
                    if purged:
                        logger.info(f"Retention cleanup removed {purged} snapshots")
                except Exception as e:
                    logger.error(f"Error in retention cleanup: {e}", exc_info=True)

                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=PURGE_INTERVAL)
                except asyncio.TimeoutError:
                    continue
        finally:
            # Cleanup on exit
            logger.info("Cleaning up resources...")
            await self.scheduler.stop()
            self.scheduler.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Traffic camera vehicle analysis")
    parser.add_argument('--mock', action='store_true',
                        help='Use the offline mock detector (no API key needed)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args(argv)

    config = Config(require_api_key=not args.mock)
    setup_logging(config, logging.DEBUG if args.debug else logging.INFO)

    detector = MockVehicleDetector(config) if args.mock else None
    system = TrafficAnalysisSystem(config, detector=detector)
    asyncio.run(system.run())


if __name__ == "__main__":
    main()
