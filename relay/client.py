import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import httpx

logger = logging.getLogger(__name__)


class RelayClient:
    """Thin async client for the queue API, used by front ends that enqueue posts."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def enqueue(
        self,
        platform: str,
        action: str,
        content: Dict[str, Any],
        scheduled_at: Union[str, datetime, None] = None,
        file_path: Optional[str] = None,
    ) -> Optional[int]:
        """
        Adds a post to the queue and returns its id.
        Rejected requests (unknown platform/action, bad schedule) return None.
        """
        body: Dict[str, Any] = {"platform": platform, "action": action, "content": content}
        if scheduled_at:
            body["scheduledAt"] = scheduled_at.isoformat() if isinstance(scheduled_at, datetime) else scheduled_at
        if file_path:
            body["filePath"] = file_path

        try:
            resp = await self.client.post("/api/v1/jobs", json=body)
            resp.raise_for_status()
            return resp.json()["id"]
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Enqueue rejected for %s:%s status=%s detail=%s",
                platform,
                action,
                e.response.status_code,
                e.response.text,
            )
            return None
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error("Enqueue failed for %s:%s: %s", platform, action, e)
            return None

    async def get(self, job_id: int) -> Optional[Dict[str, Any]]:
        try:
            resp = await self.client.get(f"/api/v1/jobs/{job_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Get failed for job=%s: %s", job_id, e)
            return None

    async def list(
        self,
        status: Optional[str] = None,
        platform: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {k: v for k, v in {"status": status, "platform": platform, "limit": limit}.items() if v is not None}
        try:
            resp = await self.client.get("/api/v1/jobs", params=params)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("List failed: %s", e)
            return []

    async def stats(self) -> Optional[Dict[str, int]]:
        try:
            resp = await self.client.get("/api/v1/jobs/stats")
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Stats failed: %s", e)
            return None

    async def cancel(self, job_id: int) -> bool:
        return await self._transition(job_id, "cancel")

    async def retry(self, job_id: int) -> bool:
        return await self._transition(job_id, "retry")

    async def _transition(self, job_id: int, op: str) -> bool:
        try:
            resp = await self.client.post(f"/api/v1/jobs/{job_id}/{op}")
            resp.raise_for_status()
            return bool(resp.json()["success"])
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning("%s failed for job=%s: %s", op.capitalize(), job_id, e)
            return False

    async def close(self):
        await self.client.aclose()
