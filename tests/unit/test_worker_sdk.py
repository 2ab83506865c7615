import asyncio
import json
from uuid import uuid4

import httpx
import pytest

from orchestrator.auth.security import compute_signature
from worker_sdk import Worker, WorkerClient, WorkerRunner


class FakeOrchestrator:
    """Answers worker API calls and records what was sent."""

    def __init__(self, claim_payload=None, claim_status: int = 200):
        self.claim_payload = claim_payload
        self.claim_status = claim_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/claim"):
            return httpx.Response(self.claim_status, json=self.claim_payload)
        return httpx.Response(200, json={"status": "ok"})

    def bodies(self, suffix: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith(suffix)]


def _client(fake: FakeOrchestrator, secret=None) -> WorkerClient:
    return WorkerClient("http://orchestrator", "worker-1", channel="acquisition", secret=secret,
                        transport=httpx.MockTransport(fake))


def _claim(job_type: str = "create_bid_plan") -> dict:
    return {
        "job": {"id": str(uuid4()), "job_type": job_type, "payload": {"candidate_id": "c-1"}},
        "lease_token": str(uuid4()),
        "expires_at": "2024-01-01T00:00:00Z",
    }


@pytest.mark.unit
def test_claim_sends_signed_request() -> None:
    claim = _claim()
    fake = FakeOrchestrator(claim_payload=claim)

    async def _run() -> None:
        client = _client(fake, secret="s3cret")
        data = await client.claim()
        await client.close()
        assert data == claim

    asyncio.run(_run())

    request = fake.requests[0]
    assert request.url.path == "/api/v1/workers/claim"
    assert request.headers["X-Worker-Signature"] == compute_signature("s3cret", request.content)
    assert json.loads(request.content) == {"worker_id": "worker-1", "channel": "acquisition", "fallback": False}


@pytest.mark.unit
def test_claim_returns_none_for_empty_queue_and_rejections() -> None:
    async def _run(fake: FakeOrchestrator):
        client = _client(fake)
        try:
            return await client.claim()
        finally:
            await client.close()

    assert asyncio.run(_run(FakeOrchestrator(claim_payload=None))) is None
    assert asyncio.run(_run(FakeOrchestrator(claim_payload={"detail": "no"}, claim_status=401))) is None


@pytest.mark.unit
def test_unsigned_when_no_secret() -> None:
    fake = FakeOrchestrator()

    async def _run() -> None:
        client = _client(fake)
        await client.heartbeat(uuid4(), uuid4())
        await client.close()

    asyncio.run(_run())
    assert "X-Worker-Signature" not in fake.requests[0].headers


@pytest.mark.unit
def test_runner_completes_job_with_handler_result() -> None:
    claim = _claim()
    fake = FakeOrchestrator()

    async def create_bid_plan(payload: dict) -> dict:
        return {"planned_for": payload["candidate_id"]}

    async def _run() -> None:
        client = _client(fake)
        runner = WorkerRunner(client, {"create_bid_plan": create_bid_plan})
        await runner.process_job(claim)
        await client.close()

    asyncio.run(_run())

    completes = fake.bodies("/complete")
    assert len(completes) == 1
    assert completes[0]["result"] == {"planned_for": "c-1"}
    assert completes[0]["lease_token"] == claim["lease_token"]
    assert fake.bodies("/fail") == []


@pytest.mark.unit
def test_runner_fails_unknown_job_type() -> None:
    fake = FakeOrchestrator()

    async def _run() -> None:
        client = _client(fake)
        await WorkerRunner(client, {}).process_job(_claim("mystery"))
        await client.close()

    asyncio.run(_run())

    fails = fake.bodies("/fail")
    assert len(fails) == 1
    assert fails[0]["error"].startswith("UnknownJobTypeError")


@pytest.mark.unit
def test_runner_reports_handler_exception() -> None:
    fake = FakeOrchestrator()

    async def broken(payload: dict) -> dict:
        raise RuntimeError("registrar timeout")

    async def _run() -> None:
        client = _client(fake)
        await WorkerRunner(client, {"create_bid_plan": broken}).process_job(_claim())
        await client.close()

    asyncio.run(_run())
    assert fake.bodies("/fail")[0]["error"] == "RuntimeError: registrar timeout"


@pytest.mark.unit
def test_worker_middleware_runs_outermost_first() -> None:
    fake = FakeOrchestrator()
    calls: list[str] = []

    worker = Worker("http://orchestrator", "worker-1", transport=httpx.MockTransport(fake))

    async def outer(payload, call_next):
        calls.append("outer")
        return await call_next(payload)

    async def inner(payload, call_next):
        calls.append("inner")
        return await call_next(payload)

    worker.add_middleware(outer)
    worker.add_middleware(inner)

    @worker.handler("create_bid_plan")
    async def create_bid_plan(payload: dict) -> dict:
        calls.append("handler")
        return {}

    async def _run() -> None:
        await worker.runner.process_job(_claim())
        await worker.client.close()

    asyncio.run(_run())
    assert calls == ["outer", "inner", "handler"]
    assert len(fake.bodies("/complete")) == 1
