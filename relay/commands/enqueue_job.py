from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from relay.db.models import Post
from relay.domain.states import JobStatus
from relay.api.v1.metrics import JOBS_ENQUEUED


async def enqueue_job(
    session: AsyncSession,
    platform: str,
    action: str,
    content_json: str,
    now: datetime,
    scheduled_at: Optional[datetime] = None,
    file_path: Optional[str] = None,
) -> int:
    """
    Inserts a PENDING post and returns its id.
    A missing scheduled_at means "run as soon as possible", stored as now.
    """
    post = Post(
        platform=platform,
        action=action,
        status=JobStatus.PENDING,
        scheduled_at=scheduled_at or now,
        content_json=content_json,
        file_path=file_path,
        retry_count=0,
        created_at=now,
        updated_at=now,
    )
    session.add(post)
    await session.flush()

    JOBS_ENQUEUED.labels(platform=platform).inc()
    return post.id
