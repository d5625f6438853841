import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Optional

from relay.api.v1.metrics import JOB_COMPLETIONS, JOB_FAILURES, QUEUE_DEPTH, TICK_DURATION
from relay.domain.errors import AuthenticationRequired, ValidationError
from relay.domain.models import EngineConfig, ExecutorResult, Job, TickReport
from relay.scheduler.executor import Executor, coerce_result
from relay.services.queue import JobQueue

logger = logging.getLogger(__name__)

MAX_RETRIES_MESSAGE = "Max retries exceeded"


class DispatchLoop:
    """
    Time-driven dispatcher for the publish queue.

    Each tick fetches the ready set and hands the jobs to the executor one at
    a time, in ready-set order, awaiting each before starting the next. The
    executor's outcome is written back to the job; nothing a single job does
    stops the loop.
    """

    def __init__(self, queue: JobQueue, executor: Executor, config: Optional[EngineConfig] = None):
        self.queue = queue
        self.executor = executor
        self.config = config or queue.config
        self.interval = self.config.poll_interval
        self._running = False
        self._task = None

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Dispatch loop started (interval={self.config.poll_interval_ms}ms, "
            f"max_retries={self.config.max_retries})"
        )

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Dispatch loop stopped.")

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                # Store errors end the tick, not the loop
                logger.error(f"Error in dispatch tick: {e}", exc_info=True)

            await asyncio.sleep(self.interval)

    async def tick(self) -> TickReport:
        report = TickReport()
        started = time.perf_counter()

        jobs = await self.queue.ready_set()
        if jobs:
            logger.info(f"Processing {len(jobs)} jobs")

        for job in jobs:
            await self._process(job, report)

        QUEUE_DEPTH.set((await self.queue.stats()).pending)
        TICK_DURATION.observe(time.perf_counter() - started)
        return report

    async def _process(self, job: Job, report: TickReport) -> None:
        report.processed += 1

        # Only reachable if max_retries was lowered after enqueueing
        if job.retry_count >= self.config.max_retries:
            logger.info(f"Job {job.id} exceeded max retries, marking as failed")
            await self.queue.fail(job.id, MAX_RETRIES_MESSAGE)
            JOB_FAILURES.labels(platform=job.platform, type="max_retries").inc()
            report.skipped += 1
            return

        logger.info(f"Executing {job.platform}:{job.action} for job {job.id}")
        try:
            payload = json.loads(job.content_json)
            raw = await self.executor(job.platform, job.action, payload, job.file_path)
            result = coerce_result(raw, job.platform, job.action)
        except AuthenticationRequired as e:
            logger.info(f"Job {job.id} needs authentication")
            await self.queue.fail(job.id, str(e))
            JOB_FAILURES.labels(platform=job.platform, type="auth").inc()
            report.failed += 1
            return
        except Exception as e:
            logger.error(f"Error processing job {job.id}: {e}", exc_info=True)
            await self.queue.fail(job.id, str(e) or type(e).__name__)
            JOB_FAILURES.labels(platform=job.platform, type="exception").inc()
            report.failed += 1
            return

        await self._record(job, result, report)

    async def _record(self, job: Job, result: ExecutorResult, report: TickReport) -> None:
        if result.success:
            try:
                await self.queue.complete(job.id, result.to_dict())
            except ValidationError as e:
                logger.error(f"Job {job.id} returned an unstorable result: {e}")
                await self.queue.fail(job.id, str(e))
                JOB_FAILURES.labels(platform=job.platform, type="error").inc()
                report.failed += 1
                return
            logger.info(f"Job {job.id} completed successfully")
            JOB_COMPLETIONS.labels(platform=job.platform).inc()
            report.completed += 1
            if job.file_path and self.config.remove_files_on_success:
                self._remove_file(job)
            return

        if result.needs_auth:
            # Counts toward the retry ceiling like any other failure
            logger.info(f"Job {job.id} needs authentication")
            detail = result.error or result.message or f"no valid {job.platform} credential"
            await self.queue.fail(job.id, str(AuthenticationRequired(job.platform, detail)))
            JOB_FAILURES.labels(platform=job.platform, type="auth").inc()
        else:
            logger.info(f"Job {job.id} failed: {result.error}")
            await self.queue.fail(job.id, result.error or "Unknown error")
            JOB_FAILURES.labels(platform=job.platform, type="error").inc()
        report.failed += 1

    @staticmethod
    def _remove_file(job: Job) -> None:
        try:
            Path(job.file_path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {job.file_path} for job {job.id}: {e}")
