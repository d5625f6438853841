from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from relay.db.models import Post
from relay.domain.states import TERMINAL_STATUSES


async def purge_old_jobs(session: AsyncSession, days: int, now: datetime) -> int:
    """
    Deletes COMPLETED/FAILED posts created more than `days` days ago.
    PENDING posts are never removed, however old they are.
    Returns the number of posts deleted.
    """
    cutoff = now - timedelta(days=days)

    stmt = (
        delete(Post)
        .where(
            Post.created_at < cutoff,
            Post.status.in_(TERMINAL_STATUSES),
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount
