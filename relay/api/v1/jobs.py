import json
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from relay.api.deps import QueueDep
from relay.domain.errors import ValidationError
from relay.domain.models import Job
from relay.domain.states import JobStatus

router = APIRouter()


class JobCreate(BaseModel):
    """The enqueue contract used by the chat front end."""

    model_config = ConfigDict(populate_by_name=True)

    platform: str
    action: str
    content: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: Optional[str] = Field(default=None, alias="scheduledAt")
    file_path: Optional[str] = Field(default=None, alias="filePath")


class JobResponse(BaseModel):
    id: int
    platform: str
    action: str
    status: JobStatus
    scheduled_at: Optional[datetime] = None
    content: Any = None
    file_path: Optional[str] = None
    result: Optional[Any] = None
    error_message: Optional[str] = None
    retry_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            platform=job.platform,
            action=job.action,
            status=job.status,
            scheduled_at=job.scheduled_at,
            content=_loads(job.content_json),
            file_path=job.file_path,
            result=_loads(job.result_json),
            error_message=job.error_message,
            retry_count=job.retry_count,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class StatsResponse(BaseModel):
    total: int
    pending: int
    completed: int
    failed: int


class TransitionResponse(BaseModel):
    id: int
    success: bool
    message: str


def _loads(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreate, queue: QueueDep):
    try:
        job_id = await queue.enqueue(
            platform=payload.platform,
            action=payload.action,
            payload=payload.content,
            scheduled_at=payload.scheduled_at,
            file_path=payload.file_path,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    job = await queue.get(job_id)
    return JobResponse.from_job(job)


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    queue: QueueDep,
    status: Optional[JobStatus] = None,
    platform: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1),
):
    jobs = await queue.list_jobs(status=status, platform=platform, limit=limit)
    return [JobResponse.from_job(j) for j in jobs]


@router.get("/stats", response_model=StatsResponse)
async def queue_stats(queue: QueueDep):
    stats = await queue.stats()
    return StatsResponse(**vars(stats))


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, queue: QueueDep):
    job = await queue.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobResponse.from_job(job)


@router.post("/{job_id}/cancel", response_model=TransitionResponse)
async def cancel_job(job_id: int, queue: QueueDep):
    cancelled = await queue.cancel(job_id)
    message = f"Job {job_id} cancelled" if cancelled else f"Job {job_id} not found or already processed"
    return TransitionResponse(id=job_id, success=cancelled, message=message)


@router.post("/{job_id}/retry", response_model=TransitionResponse)
async def retry_job(job_id: int, queue: QueueDep):
    requeued = await queue.retry(job_id)
    message = f"Job {job_id} queued for retry" if requeued else f"Job {job_id} not found or not failed"
    return TransitionResponse(id=job_id, success=requeued, message=message)
