from datetime import datetime
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from relay.db.models import Token
from relay.domain.models import Credential


def _insert_for(session: AsyncSession):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def save_token(session: AsyncSession, credential: Credential, now: datetime) -> None:
    """
    Upserts the credential for its platform in one statement, replacing
    every column of any previous record.
    """
    insert = _insert_for(session)
    values = {
        "platform": credential.platform,
        "access_token": credential.access_token,
        "refresh_token": credential.refresh_token,
        "expires_at": credential.expires_at,
        "updated_at": now,
    }
    stmt = insert(Token).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Token.platform],
        set_={
            "access_token": stmt.excluded.access_token,
            "refresh_token": stmt.excluded.refresh_token,
            "expires_at": stmt.excluded.expires_at,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await session.execute(stmt)


async def get_token(session: AsyncSession, platform: str) -> Optional[Token]:
    return await session.get(Token, platform)


async def list_tokens(session: AsyncSession) -> list[Token]:
    res = await session.execute(select(Token).order_by(Token.platform))
    return list(res.scalars().all())


async def delete_token(session: AsyncSession, platform: str) -> bool:
    stmt = delete(Token).where(Token.platform == platform).execution_options(synchronize_session=False)
    res = await session.execute(stmt)
    return res.rowcount > 0
