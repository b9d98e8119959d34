#!/usr/bin/env python3
"""
Queue administration for the vehicle analysis pipeline.

Usage:
    python scripts/queue_admin.py status
    python scripts/queue_admin.py stats --range 7d --source cam-12
    python scripts/queue_admin.py reclaim --minutes 30
    python scripts/queue_admin.py reset-all
    python scripts/queue_admin.py retry <detection_id>
    python scripts/queue_admin.py missing-boxes --limit 10
    python scripts/queue_admin.py purge --days 30
    python scripts/queue_admin.py boxes <detection_id> [--annotate]
"""

import argparse
import json
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import Config
from database_manager import DatabaseManager, TIME_RANGES
from exceptions import QueueError
from job_queue import DetectionQueue
from resource_manager import StorageManager
from utils import DetectionVisualizer


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


def main(argv=None):
    parser = argparse.ArgumentParser(description="Inspect and repair the analysis queue")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Count detection records per state")

    stats = subparsers.add_parser("stats", help="Detection statistics")
    stats.add_argument("--range", dest="time_range", default="24h", choices=list(TIME_RANGES))
    stats.add_argument("--source", default=None, help="Only this source")

    reclaim = subparsers.add_parser("reclaim", help="Re-queue records stuck in processing")
    reclaim.add_argument("--minutes", type=float, default=None,
                         help="Processing timeout (defaults to SCHEDULER_PROCESSING_TIMEOUT)")

    subparsers.add_parser("reset-all", help="Re-queue every record in processing")

    retry = subparsers.add_parser("retry", help="Re-queue one failed record")
    retry.add_argument("detection_id", type=int)

    missing = subparsers.add_parser("missing-boxes",
                                    help="Re-queue completed records without stored boxes")
    missing.add_argument("--limit", type=int, default=10)

    purge = subparsers.add_parser("purge", help="Delete old snapshots and their records")
    purge.add_argument("--days", type=int, default=None,
                       help="Days to keep (defaults to PERFORMANCE_SNAPSHOT_RETENTION_DAYS)")

    boxes = subparsers.add_parser("boxes", help="Show stored bounding boxes of a record")
    boxes.add_argument("detection_id", type=int)
    boxes.add_argument("--annotate", action="store_true",
                       help="Draw the boxes onto the snapshot image")

    args = parser.parse_args(argv)

    config = Config(require_api_key=False)
    database = DatabaseManager(config)
    queue = DetectionQueue(database)
    storage = StorageManager(config)

    if args.command == "status":
        print_json(queue.get_queue_status().to_dict())

    elif args.command == "stats":
        print_json(database.get_detection_stats(args.source, args.time_range).to_dict())

    elif args.command == "reclaim":
        minutes = args.minutes
        if minutes is None:
            minutes = config.scheduler.processing_timeout_minutes
        print(f"Reclaimed {queue.reclaim_stuck(minutes)} stuck records")

    elif args.command == "reset-all":
        print(f"Reset {queue.reset_all_processing()} processing records to queued")

    elif args.command == "retry":
        try:
            queue.retry_failed(args.detection_id)
        except QueueError as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(f"Detection {args.detection_id} queued for retry")

    elif args.command == "missing-boxes":
        print(f"Queued {queue.queue_missing_boxes(args.limit)} records with missing boxes")

    elif args.command == "purge":
        days = args.days
        if days is None:
            days = config.performance.snapshot_retention_days
        file_paths = database.purge_snapshots(days)
        deleted = storage.delete_snapshot_files(file_paths)
        print(f"Purged {len(file_paths)} snapshots, deleted {deleted} image files")

    elif args.command == "boxes":
        detection = database.get_detection(args.detection_id)
        if detection is None:
            print(f"Error: Detection {args.detection_id} not found")
            sys.exit(1)
        stored = database.get_bounding_boxes(args.detection_id)
        print(f"Detection {detection.id} ({detection.status.value}): "
              f"{detection.total_boxes} boxes, confidence {detection.confidence_score:.2f}")
        if detection.last_error:
            print(f"Last error ({detection.error_kind.value}): {detection.last_error}")
        for box in stored:
            print(f"  {box.category:<22} [{box.x_min}, {box.y_min}, {box.x_max}, {box.y_max}] "
                  f"conf {box.confidence:.2f} {'valid' if box.is_valid else 'INVALID'}")

        if args.annotate:
            snapshot = database.get_snapshot(detection.snapshot_id)
            image_path = storage.resolve_image_path(snapshot.file_path)
            annotated = DetectionVisualizer.create_annotated_image(image_path, stored)
            print(f"Annotated image: {annotated}")


if __name__ == "__main__":
    main()
