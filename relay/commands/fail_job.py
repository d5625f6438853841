from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.db.models import Post
from relay.domain.states import JobStatus

CANCELLED_MESSAGE = "Cancelled by user"


async def fail_job(
    session: AsyncSession,
    job_id: int,
    error: str,
    now: datetime,
) -> int:
    """
    Marks a post as FAILED and counts the attempt.

    The retry counter is incremented by the database in the same UPDATE so
    a concurrent writer can never lose an increment.
    """
    stmt = (
        update(Post)
        .where(Post.id == job_id)
        .values(
            status=JobStatus.FAILED,
            error_message=error,
            retry_count=Post.retry_count + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount


async def cancel_job(session: AsyncSession, job_id: int, now: datetime) -> bool:
    """
    Cancels a PENDING post. Cancellation is recorded as a failure (without
    counting an attempt) so the row stays around for auditing.
    """
    stmt = (
        update(Post)
        .where(Post.id == job_id, Post.status == JobStatus.PENDING)
        .values(
            status=JobStatus.FAILED,
            error_message=CANCELLED_MESSAGE,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount > 0


async def retry_job(session: AsyncSession, job_id: int, now: datetime) -> bool:
    """
    Moves a FAILED post back to PENDING.

    retry_count is left alone: a manual retry does not lift the post back
    under the retry ceiling.
    """
    stmt = (
        update(Post)
        .where(Post.id == job_id, Post.status == JobStatus.FAILED)
        .values(
            status=JobStatus.PENDING,
            error_message=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount > 0
