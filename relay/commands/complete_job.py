from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.db.models import Post
from relay.domain.states import JobStatus


async def complete_job(
    session: AsyncSession,
    job_id: int,
    result_json: str,
    now: datetime,
) -> int:
    """
    Marks a post as COMPLETED and stores the executor result.

    Re-completing simply overwrites the result. An unknown id affects zero
    rows and is not an error. Returns the number of rows updated.
    """
    stmt = (
        update(Post)
        .where(Post.id == job_id)
        .values(
            status=JobStatus.COMPLETED,
            result_json=result_json,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount
