import hashlib
import hmac
import json
import logging
from typing import Optional, Protocol, Sequence
from uuid import UUID

import httpx

from orchestrator.settings import settings

logger = logging.getLogger(__name__)

class WorkerPoolNotifier(Protocol):
    async def notify(self, job_ids: Sequence[UUID]) -> bool:
        """Tells the worker pool that new work exists. Returns False on failure."""
        ...

class LoggingNotifier:
    """
    Used when no worker pool endpoint is configured: workers find new jobs on
    their next poll, so the wake-up is only logged.
    """

    async def notify(self, job_ids: Sequence[UUID]) -> bool:
        if job_ids:
            logger.info("New work available: %s", ", ".join(str(j) for j in job_ids))
        return True

class HttpWorkerPoolNotifier:
    def __init__(
        self,
        url: str,
        timeout: float = 1.5,
        secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.secret = secret
        self._transport = transport

    def _body(self, job_ids: Sequence[UUID]) -> bytes:
        # Stable encoding keeps signatures deterministic
        return json.dumps({"job_ids": [str(j) for j in job_ids]}, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def _headers(self, body: bytes) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Worker-Signature"] = hmac.new(self.secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return headers

    async def notify(self, job_ids: Sequence[UUID]) -> bool:
        if not job_ids:
            return True
        body = self._body(job_ids)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, content=body, headers=self._headers(body))
                resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("Worker pool notification failed for %d jobs: %s", len(job_ids), e)
            return False

def build_notifier() -> WorkerPoolNotifier:
    if settings.WORKER_POOL_NOTIFY_URL:
        return HttpWorkerPoolNotifier(
            settings.WORKER_POOL_NOTIFY_URL,
            timeout=settings.WORKER_POOL_NOTIFY_TIMEOUT_SECONDS,
            secret=settings.WORKER_SHARED_SECRET,
        )
    return LoggingNotifier()
