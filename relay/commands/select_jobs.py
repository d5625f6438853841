from datetime import datetime
from typing import Optional

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from relay.db.models import Post
from relay.domain.states import JobStatus
from relay.domain.models import QueueStats


async def select_ready_jobs(session: AsyncSession, now: datetime, max_retries: int) -> list[Post]:
    """
    The ready set: PENDING posts that are due and still under the retry ceiling,
    oldest schedule first, then creation order.
    """
    stmt = (
        select(Post)
        .where(
            Post.status == JobStatus.PENDING,
            or_(Post.scheduled_at.is_(None), Post.scheduled_at <= now),
            Post.retry_count < max_retries,
        )
        .order_by(
            Post.scheduled_at.asc().nulls_first(),
            Post.created_at.asc(),
            Post.id.asc(),
        )
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def list_jobs(
    session: AsyncSession,
    status: Optional[JobStatus] = None,
    platform: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[Post]:
    stmt = select(Post)
    if status:
        stmt = stmt.where(Post.status == status)
    if platform:
        stmt = stmt.where(Post.platform == platform)

    stmt = stmt.order_by(Post.created_at.desc(), Post.id.desc())
    if limit:
        stmt = stmt.limit(limit)

    res = await session.execute(stmt)
    return list(res.scalars().all())


async def get_job(session: AsyncSession, job_id: int) -> Optional[Post]:
    return await session.get(Post, job_id)


async def count_jobs(session: AsyncSession) -> QueueStats:
    stmt = select(Post.status, func.count(Post.id)).group_by(Post.status)
    rows = (await session.execute(stmt)).all()

    stats = QueueStats()
    for status, count in rows:
        stats.total += count
        if status == JobStatus.PENDING:
            stats.pending = count
        elif status == JobStatus.COMPLETED:
            stats.completed = count
        elif status == JobStatus.FAILED:
            stats.failed = count
    return stats
