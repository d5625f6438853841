from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from relay.domain.states import JobStatus


@dataclass(frozen=True)
class EngineConfig:
    """Tunables handed to the queue, credential manager and dispatch loop."""

    poll_interval_ms: int = 60_000
    max_retries: int = 3
    retention_days: int = 7
    refresh_buffer_ms: int = 5 * 60 * 1000
    remove_files_on_success: bool = True

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def refresh_buffer(self) -> timedelta:
        return timedelta(milliseconds=self.refresh_buffer_ms)


@dataclass
class Job:
    id: int
    platform: str
    action: str
    status: JobStatus
    content_json: str

    scheduled_at: Optional[datetime] = None
    file_path: Optional[str] = None
    result_json: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class QueueStats:
    total: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0


@dataclass
class Credential:
    platform: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __repr__(self) -> str:
        # Keep secrets out of logs and tracebacks
        return (
            f"Credential(platform={self.platform!r}, has_refresh_token={self.refresh_token is not None}, "
            f"expires_at={self.expires_at!r})"
        )


@dataclass
class CredentialStatus:
    exists: bool
    expired: bool
    needs_refresh: bool
    expires_at: Optional[datetime] = None


@dataclass
class HandshakeSession:
    platform: str
    user_id: str
    code_verifier: Optional[str] = None


@dataclass
class HandshakeStart:
    authorization_url: str
    state: str


def _flag(value: Any) -> bool:
    # Executors speak JSON, so "false" must not read as truthy
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


@dataclass
class ExecutorResult:
    """The total interface between the dispatch loop and a platform publisher."""

    success: bool
    platform: str
    action: str
    post_id: Optional[str] = None
    url: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    needs_auth: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    _FIELDS = {
        "success": "success",
        "platform": "platform",
        "action": "action",
        "postId": "post_id",
        "post_id": "post_id",
        "videoId": "post_id",
        "url": "url",
        "message": "message",
        "error": "error",
        "needsAuth": "needs_auth",
        "needs_auth": "needs_auth",
    }

    @classmethod
    def from_dict(cls, data: dict[str, Any], platform: str, action: str) -> "ExecutorResult":
        kwargs: dict[str, Any] = {"success": False, "platform": platform, "action": action}
        extra = {}
        for key, value in data.items():
            name = cls._FIELDS.get(key)
            if name is None:
                extra[key] = value
            elif name == "post_id" and kwargs.get("post_id"):
                extra[key] = value
            else:
                kwargs[name] = value
        kwargs["success"] = _flag(kwargs["success"])
        kwargs["needs_auth"] = _flag(kwargs.get("needs_auth", False))
        return cls(extra=extra, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "platform": self.platform,
            "action": self.action,
        }
        optional = {
            "postId": self.post_id,
            "url": self.url,
            "message": self.message,
            "error": self.error,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        if self.needs_auth:
            data["needsAuth"] = True
        data.update(self.extra)
        return data


@dataclass
class TickReport:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
