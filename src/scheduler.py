"""
Concurrency and retry scheduler for vehicle analysis.

A pass reclaims stuck records, then claims queued records batch by batch
until the queue is drained. Each batch is split into chunks of
max_concurrent_requests; chunks run one after another with a rate-limit
delay in between, and the jobs inside a chunk run concurrently.

Per-image failures end up as a failed record and never abort a chunk.
Only database errors propagate, aborting the pass until the next tick.
"""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, List, Optional

from config import Config, SchedulerConfig
from aggregator import aggregate
from coordinates import normalize_boxes
from exceptions import DatabaseError
from job_queue import DetectionQueue, SnapshotRef
from models import AnalysisJob, AnalysisOutcome, ErrorKind, PassSummary
from resource_manager import StorageManager, SystemMonitor
from response_parser import parse_response
from utils import PerformanceTimer, chunked
from vehicle_detector import VehicleDetector

logger = logging.getLogger(__name__)


def compute_retry_delay(kind: ErrorKind, attempt: int, settings: SchedulerConfig) -> float:
    """
    Seconds to wait before retrying after failed attempt number `attempt` (1-based).

    Rate limiting waits rate_limit_delay * attempt; other retryable errors
    back off exponentially from base_retry_delay, capped at max_retry_delay.
    """
    if kind == ErrorKind.RATE_LIMITED:
        return settings.rate_limit_delay * attempt
    return min(settings.base_retry_delay * 2 ** (attempt - 1), settings.max_retry_delay)


class AnalysisScheduler:
    """
    Runs analysis passes over the detection queue, on a fixed interval
    and on demand. At most one pass runs at a time.
    """

    def __init__(self, config: Config, queue: DetectionQueue, detector: VehicleDetector,
                 storage: StorageManager, system_monitor: Optional[SystemMonitor] = None,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self.config = config
        self.settings = config.scheduler
        self.queue = queue
        self.detector = detector
        self.storage = storage
        self.system_monitor = system_monitor
        self._sleep = sleep or asyncio.sleep

        # Inference calls block; one worker per concurrent request plus one for queue writes
        self.executor = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_requests + 1,
            thread_name_prefix="analysis"
        )

        self._pass_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._trigger_event: Optional[asyncio.Event] = None
        self._ticker_task: Optional[asyncio.Task] = None

        self.pass_count = 0
        self.last_summary: Optional[PassSummary] = None

    @property
    def is_processing(self) -> bool:
        return self._pass_lock.locked()

    @property
    def is_running(self) -> bool:
        return self._ticker_task is not None and not self._ticker_task.done()

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args))

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    async def run_pass(self) -> PassSummary:
        """
        Process queued records until none are left.

        Returns immediately with a skipped summary if another pass is running.
        Raises DatabaseError if the queue itself fails.
        """
        if self._pass_lock.locked():
            logger.info("Analysis pass already in progress, skipping")
            return PassSummary(skipped=True, reason="already_running")

        async with self._pass_lock:
            summary = await self._run_pass()
            self.pass_count += 1
            self.last_summary = summary
            return summary

    async def _run_pass(self) -> PassSummary:
        if self.system_monitor is not None:
            reason = self.system_monitor.skip_reason()
            if reason:
                return PassSummary(skipped=True, reason=reason)

        summary = PassSummary()
        with PerformanceTimer("Analysis pass") as timer:
            summary.reclaimed = await self._run_blocking(
                self.queue.reclaim_stuck, self.settings.processing_timeout_minutes
            )

            while True:
                jobs = await self._run_blocking(self.queue.dequeue_batch, self.settings.batch_size)
                if not jobs:
                    break

                summary.batches += 1
                summary.claimed += len(jobs)
                logger.info(f"Processing batch {summary.batches} with {len(jobs)} images")

                for outcome in await self._process_batch(jobs):
                    summary.outcomes.append(outcome)
                    summary.retries += outcome.attempts - 1
                    if outcome.stale:
                        summary.stale += 1
                    elif outcome.success:
                        summary.completed += 1
                    else:
                        summary.failed += 1

                if len(jobs) < self.settings.batch_size:
                    break
                await self._sleep(self.settings.rate_limit_delay)

        if summary.claimed:
            logger.info(f"Analysis pass finished in {timer.duration:.2f}s: "
                        f"{summary.completed} completed, {summary.failed} failed, "
                        f"{summary.retries} retries across {summary.batches} batches")
        else:
            logger.debug("Analysis pass found no queued images")
        return summary

    async def _process_batch(self, jobs: List[AnalysisJob]) -> List[AnalysisOutcome]:
        chunks = list(chunked(jobs, self.settings.max_concurrent_requests))
        outcomes: List[AnalysisOutcome] = []

        for index, chunk in enumerate(chunks):
            logger.info(f"Processing chunk {index + 1}/{len(chunks)} of {len(chunk)} images")
            results = await asyncio.gather(
                *(self._process_job(job) for job in chunk), return_exceptions=True
            )

            # Siblings always finish before a queue failure is propagated
            errors = [result for result in results if isinstance(result, BaseException)]
            if errors:
                raise errors[0]
            outcomes.extend(results)

            if index < len(chunks) - 1:
                await self._sleep(self.settings.rate_limit_delay)

        return outcomes

    async def _process_job(self, job: AnalysisJob) -> AnalysisOutcome:
        """Analyze one claimed record; errors other than DatabaseError become a failed record."""
        try:
            return await self._analyze(job)
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error analyzing detection {job.detection_id}: {e}",
                         exc_info=True)
            return await self._finish_failed(job, ErrorKind.SERVICE_ERROR, str(e), attempts=1)

    async def _analyze(self, job: AnalysisJob) -> AnalysisOutcome:
        image_bytes = await self._run_blocking(self.storage.load_image, job.file_path)
        if image_bytes is None:
            return await self._finish_failed(
                job, ErrorKind.FILE_NOT_FOUND, f"Image file not found: {job.file_path}", attempts=1
            )

        attempt = 0
        processing_time = 0.0
        while True:
            attempt += 1
            result = await self._run_blocking(self.detector.infer, image_bytes)
            processing_time += result.processing_time

            if result.success:
                parsed = parse_response(result.raw_text)
                if parsed.success:
                    return await self._finish_completed(job, parsed.boxes, attempt, processing_time)
                kind, message = parsed.error_kind, parsed.error_message
            else:
                kind, message = result.error_kind, result.error_message

            if not kind.is_retryable or attempt >= self.settings.max_retries:
                return await self._finish_failed(job, kind, message, attempt, processing_time)

            if not await self._run_blocking(self.queue.record_retry, job, kind, message):
                return self._stale_outcome(job, attempt)

            delay = compute_retry_delay(kind, attempt, self.settings)
            logger.warning(f"Detection {job.detection_id} failed ({kind.value}), retrying in "
                           f"{delay:.1f}s (attempt {attempt}/{self.settings.max_retries})")
            await self._sleep(delay)

    async def _finish_completed(self, job: AnalysisJob, parsed_boxes, attempts: int,
                                processing_time: float) -> AnalysisOutcome:
        boxes = normalize_boxes(parsed_boxes)
        aggregation = aggregate(boxes)
        if not await self._run_blocking(self.queue.complete, job, aggregation, boxes):
            return self._stale_outcome(job, attempts)

        logger.info(f"Detection {job.detection_id} completed: {aggregation.total_boxes} boxes "
                    f"({aggregation.valid_boxes} valid), confidence {aggregation.confidence_score:.2f}")
        return AnalysisOutcome(
            detection_id=job.detection_id,
            snapshot_id=job.snapshot_id,
            success=True,
            attempts=attempts,
            total_boxes=aggregation.total_boxes,
            valid_boxes=aggregation.valid_boxes,
            confidence_score=aggregation.confidence_score,
            processing_time=processing_time,
        )

    async def _finish_failed(self, job: AnalysisJob, kind: ErrorKind, message: str,
                             attempts: int, processing_time: float = 0.0) -> AnalysisOutcome:
        if not await self._run_blocking(self.queue.fail, job, kind, message):
            return self._stale_outcome(job, attempts)

        logger.error(f"Detection {job.detection_id} failed after {attempts} attempt(s) "
                     f"({kind.value}): {message}")
        return AnalysisOutcome(
            detection_id=job.detection_id,
            snapshot_id=job.snapshot_id,
            success=False,
            attempts=attempts,
            error_kind=kind,
            error_message=message,
            processing_time=processing_time,
        )

    def _stale_outcome(self, job: AnalysisJob, attempts: int) -> AnalysisOutcome:
        logger.warning(f"Detection {job.detection_id} was re-queued or reclaimed during "
                       f"analysis, discarding result")
        return AnalysisOutcome(
            detection_id=job.detection_id,
            snapshot_id=job.snapshot_id,
            success=False,
            attempts=attempts,
            stale=True,
        )

    async def analyze_now(self, snapshot: Optional[SnapshotRef] = None) -> PassSummary:
        """Manual trigger: optionally queue a snapshot, then run a pass."""
        if snapshot is not None:
            if not await self._run_blocking(self.queue.enqueue, snapshot):
                return PassSummary(skipped=True, reason="enqueue_failed")
        return await self.run_pass()

    # -------------------------------------------------------------------------
    # Ticker
    # -------------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Start the periodic ticker on the running event loop."""
        if self.is_running:
            return self._ticker_task

        self._stop_event = asyncio.Event()
        self._trigger_event = asyncio.Event()
        self._ticker_task = asyncio.create_task(self._tick_loop(), name="analysis-ticker")
        logger.info(f"Analysis scheduler started (interval {self.settings.interval_seconds}s, "
                    f"batch size {self.settings.batch_size}, "
                    f"{self.settings.max_concurrent_requests} concurrent requests)")
        return self._ticker_task

    def trigger(self) -> bool:
        """Ask the ticker to run a pass now instead of waiting for the interval."""
        if not self.is_running:
            logger.warning("Scheduler is not running, trigger ignored")
            return False
        self._trigger_event.set()
        return True

    async def stop(self):
        """Stop the ticker. An in-flight pass is allowed to finish."""
        if self._ticker_task is None:
            return
        self._stop_event.set()
        await self._ticker_task
        self._ticker_task = None
        logger.info("Analysis scheduler stopped")

    def close(self):
        """Release the worker threads."""
        self.executor.shutdown(wait=True, cancel_futures=True)

    async def _tick_loop(self):
        loop = asyncio.get_running_loop()
        interval = self.settings.interval_seconds
        run_now = self.settings.run_on_start
        next_tick = loop.time() + interval
        while not self._stop_event.is_set():
            if run_now:
                # Next tick is measured from the start of this pass
                next_tick = loop.time() + interval
                try:
                    await self.run_pass()
                except DatabaseError as e:
                    logger.error(f"Analysis pass aborted, will retry on next tick: {e}")
                except Exception as e:
                    logger.error(f"Error in analysis pass: {e}", exc_info=True)
            run_now = await self._wait_for_tick(max(0.0, next_tick - loop.time()))

    async def _wait_for_tick(self, timeout: float) -> bool:
        """Wait until the next tick, a trigger or stop. True if a pass should run."""
        waiters = {
            asyncio.ensure_future(self._stop_event.wait()),
            asyncio.ensure_future(self._trigger_event.wait()),
        }
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if self._stop_event.is_set():
            return False
        self._trigger_event.clear()
        return True

    def get_status(self) -> dict:
        last = self.last_summary
        return {
            'running': self.is_running,
            'processing': self.is_processing,
            'passes': self.pass_count,
            'last_pass': None if last is None else {
                'claimed': last.claimed,
                'completed': last.completed,
                'failed': last.failed,
                'retries': last.retries,
                'batches': last.batches,
                'reclaimed': last.reclaimed,
                'skipped': last.skipped,
                'reason': last.reason,
            },
        }
