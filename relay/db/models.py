from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Text, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime, TypeDecorator

from relay.db.session import Base
from relay.domain.models import Job, Credential
from relay.domain.states import JobStatus
from relay.utils.clock import as_utc


class UTCDateTime(TypeDecorator):
    """
    Stores timestamps as naive UTC and hands them back timezone-aware.

    SQLite has no timezone support, so everything is normalised to UTC on
    the way in; that keeps string comparisons in WHERE clauses correct.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)


class Post(Base):
    __tablename__ = "posts"
    # AUTOINCREMENT keeps ids from being reused after the retention sweep
    __table_args__ = (
        CheckConstraint("status IN ('pending', 'completed', 'failed')", name="ck_posts_status"),
        Index("idx_posts_status", "status"),
        Index("idx_posts_scheduled_at", "scheduled_at"),
        Index("idx_posts_platform", "platform"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING, nullable=False)

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    content_json: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def to_domain(self) -> Job:
        return Job(
            id=self.id,
            platform=self.platform,
            action=self.action,
            status=JobStatus(self.status),
            content_json=self.content_json,
            scheduled_at=self.scheduled_at,
            file_path=self.file_path,
            result_json=self.result_json,
            error_message=self.error_message,
            retry_count=self.retry_count,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class Token(Base):
    __tablename__ = "tokens"

    platform: Mapped[str] = mapped_column(String, primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def to_domain(self) -> Credential:
        return Credential(
            platform=self.platform,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
            updated_at=self.updated_at,
        )
