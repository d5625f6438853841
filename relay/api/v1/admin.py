from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from relay.api.deps import QueueDep, CredentialsDep
from relay.domain.errors import UnknownTagError
from relay.domain.states import Platform

router = APIRouter()


class CredentialStatusResponse(BaseModel):
    platform: str
    exists: bool
    expired: bool
    needs_refresh: bool
    expires_at: Optional[datetime] = None


def _platform_or_404(platform: str) -> Platform:
    try:
        return Platform.parse(platform)
    except UnknownTagError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/cleanup")
async def trigger_cleanup(queue: QueueDep, days: Optional[int] = Query(default=None, ge=0)):
    days = queue.config.retention_days if days is None else days
    deleted = await queue.purge_older_than(days)
    return {"deleted_count": deleted, "days": days}


@router.get("/credentials", response_model=list[CredentialStatusResponse])
async def list_credential_status(credentials: CredentialsDep):
    statuses = []
    for platform in Platform:
        st = await credentials.status(platform.value)
        statuses.append(CredentialStatusResponse(platform=platform.value, **vars(st)))
    return statuses


@router.get("/credentials/{platform}", response_model=CredentialStatusResponse)
async def credential_status(platform: str, credentials: CredentialsDep):
    tag = _platform_or_404(platform)
    st = await credentials.status(tag.value)
    return CredentialStatusResponse(platform=tag.value, **vars(st))


@router.delete("/credentials/{platform}")
async def remove_credential(platform: str, credentials: CredentialsDep):
    tag = _platform_or_404(platform)
    removed = await credentials.remove(tag.value)
    if not removed:
        raise HTTPException(status_code=404, detail=f"No credential stored for {tag.value}")
    return {"platform": tag.value, "removed": True}
