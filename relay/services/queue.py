import json
import logging
from datetime import datetime
from typing import Any, Optional, Union

from relay.commands.enqueue_job import enqueue_job
from relay.commands.complete_job import complete_job
from relay.commands.fail_job import fail_job, cancel_job, retry_job
from relay.commands.purge_jobs import purge_old_jobs
from relay.commands.select_jobs import select_ready_jobs, list_jobs, get_job, count_jobs
from relay.db.session import Store
from relay.domain.errors import ValidationError
from relay.domain.models import EngineConfig, Job, QueueStats
from relay.domain.states import JobStatus, Platform, parse_action
from relay.utils.clock import Clock, utc_now, as_utc

logger = logging.getLogger(__name__)


def parse_schedule(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        # fromisoformat in 3.11 accepts the trailing "Z" that JS toISOString() emits
        return as_utc(datetime.fromisoformat(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid scheduledAt: {value!r}")


class JobQueue:
    """
    Durable publish queue.

    Every method runs in its own transaction against the store and is a
    single SQL statement, so the API process and the scheduler process can
    share the database safely.
    """

    def __init__(self, store: Store, config: Optional[EngineConfig] = None, clock: Clock = utc_now):
        self.store = store
        self.config = config or EngineConfig()
        self.clock = clock

    async def enqueue(
        self,
        platform: str,
        action: str,
        payload: Any,
        scheduled_at: Union[str, datetime, None] = None,
        file_path: Optional[str] = None,
    ) -> int:
        if not platform or not action:
            raise ValidationError("Missing required fields: platform, action")

        platform_tag = Platform.parse(platform)
        action = parse_action(platform_tag, action)
        when = parse_schedule(scheduled_at)

        try:
            content_json = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Content is not JSON serializable: {e}")

        async with self.store.transaction() as session:
            job_id = await enqueue_job(
                session,
                platform=platform_tag.value,
                action=action,
                content_json=content_json,
                now=self.clock(),
                scheduled_at=when,
                file_path=file_path,
            )

        logger.info(f"Job {job_id} added to queue ({platform_tag}:{action})")
        return job_id

    async def ready_set(self) -> list[Job]:
        async with self.store.transaction() as session:
            posts = await select_ready_jobs(session, self.clock(), self.config.max_retries)
            return [p.to_domain() for p in posts]

    async def complete(self, job_id: int, result: Any) -> int:
        try:
            result_json = json.dumps(result)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Result is not JSON serializable: {e}")

        async with self.store.transaction() as session:
            return await complete_job(session, job_id, result_json, self.clock())

    async def fail(self, job_id: int, error: str) -> int:
        async with self.store.transaction() as session:
            return await fail_job(session, job_id, error, self.clock())

    async def cancel(self, job_id: int) -> bool:
        async with self.store.transaction() as session:
            cancelled = await cancel_job(session, job_id, self.clock())
        if cancelled:
            logger.info(f"Job {job_id} cancelled")
        return cancelled

    async def retry(self, job_id: int) -> bool:
        async with self.store.transaction() as session:
            requeued = await retry_job(session, job_id, self.clock())
        if requeued:
            logger.info(f"Job {job_id} queued for retry")
        return requeued

    async def get(self, job_id: int) -> Optional[Job]:
        async with self.store.transaction() as session:
            post = await get_job(session, job_id)
            return post.to_domain() if post else None

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        platform: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        async with self.store.transaction() as session:
            posts = await list_jobs(session, status=status, platform=platform, limit=limit)
            return [p.to_domain() for p in posts]

    async def stats(self) -> QueueStats:
        async with self.store.transaction() as session:
            return await count_jobs(session)

    async def purge_older_than(self, days: int) -> int:
        async with self.store.transaction() as session:
            deleted = await purge_old_jobs(session, days, self.clock())
        logger.info(f"Cleaned up {deleted} old posts")
        return deleted
