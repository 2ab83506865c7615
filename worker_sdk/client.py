import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)

class WorkerClient:
    def __init__(
        self,
        base_url: str,
        worker_id: str,
        channel: Optional[str] = None,
        secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.channel = channel
        self.secret = secret
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @staticmethod
    def _serialize_body(json_body: Dict[str, Any]) -> bytes:
        # Stable encoding keeps signatures deterministic and payloads compact.
        return json.dumps(json_body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def _build_headers(self, body: bytes) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Worker-Signature"] = hmac.new(
                self.secret.encode("utf-8"),
                body,
                hashlib.sha256,
            ).hexdigest()
        return headers

    async def _post(self, path: str, json_body: Dict[str, Any]) -> httpx.Response:
        content = self._serialize_body(json_body)
        return await self.client.post(path, content=content, headers=self._build_headers(content))

    async def claim(
        self,
        channel: Optional[str] = None,
        fallback: bool = False,
        lease_duration_seconds: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Claims the next job. Returns {"job": ..., "lease_token": ..., "expires_at": ...}
        or None when the queue is empty or the request failed.
        """
        ch = channel or self.channel

        payload: Dict[str, Any] = {"worker_id": self.worker_id, "fallback": fallback}
        if ch:
            payload["channel"] = ch
        if lease_duration_seconds:
            payload["lease_duration_seconds"] = lease_duration_seconds

        try:
            resp = await self._post("/api/v1/workers/claim", json_body=payload)
            resp.raise_for_status()
            data = resp.json()
            return data or None
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            log_fn = logger.info if status_code in (401, 403, 422) else logger.warning
            log_fn(
                "Claim rejected for worker=%s channel=%s status=%s",
                self.worker_id,
                ch,
                status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Claim failed for worker=%s channel=%s: %s", self.worker_id, ch, e)
            return None

    async def heartbeat(self, job_id: UUID, lease_token: UUID) -> bool:
        try:
            resp = await self._post(
                f"/api/v1/workers/{job_id}/heartbeat",
                json_body={
                    "worker_id": self.worker_id,
                    "lease_token": str(lease_token)
                }
            )
            resp.raise_for_status()
            return True
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Heartbeat failed for worker=%s job=%s: %s", self.worker_id, job_id, e)
            return False

    async def complete(self, job_id: UUID, lease_token: UUID, result: Dict[str, Any]) -> bool:
        try:
            resp = await self._post(
                f"/api/v1/workers/{job_id}/complete",
                json_body={
                    "worker_id": self.worker_id,
                    "lease_token": str(lease_token),
                    "result": result
                }
            )
            resp.raise_for_status()
            return True
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Complete failed for worker=%s job=%s: %s", self.worker_id, job_id, e)
            return False

    async def fail(self, job_id: UUID, lease_token: UUID, error: str) -> bool:
        try:
            resp = await self._post(
                f"/api/v1/workers/{job_id}/fail",
                json_body={
                    "worker_id": self.worker_id,
                    "lease_token": str(lease_token),
                    "error": error
                }
            )
            resp.raise_for_status()
            return True
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Fail request failed for worker=%s job=%s: %s", self.worker_id, job_id, e)
            return False

    async def close(self):
        await self.client.aclose()
