#!/usr/bin/env python3
"""
Fires many concurrent claims at a running orchestrator and checks that a single
job is handed to exactly one worker.

    WORKER_SHARED_SECRET=... python scripts/verify_no_double_claim.py
"""
import asyncio
import os
import uuid

import httpx

from worker_sdk import WorkerClient

API_URL = os.environ.get("ORCHESTRATOR_URL", "http://localhost:8000")
SECRET = os.environ.get("WORKER_SHARED_SECRET")
CLAIMERS = 20

async def attempt_claim(worker_id, channel):
    client = WorkerClient(API_URL, worker_id, channel=channel, secret=SECRET)
    try:
        result = await client.claim()
        if result:
            result["worker_id"] = worker_id
        return result
    finally:
        await client.close()

async def verify_no_double_claim():
    # Private lane so jobs already in the queue do not interfere
    channel = f"concurrency-{uuid.uuid4()}"

    async with httpx.AsyncClient(base_url=API_URL) as client:
        print("1. Creating 1 job...")
        resp = await client.post("/api/v1/jobs", json={
            "job_type": "concurrency_test",
            "channel": channel,
            "payload": {"task": "concurrency_test"}
        })
        resp.raise_for_status()
        job_id = resp.json()["id"]
        print(f"   Job created: {job_id}")

    print(f"2. Spawning {CLAIMERS} concurrent claim attempts...")
    results = await asyncio.gather(*[attempt_claim(f"worker-{i}", channel) for i in range(CLAIMERS)])

    claims = [r for r in results if r is not None]
    print(f"3. Results: {len(claims)} successful claims.")

    if len(claims) == 1:
        if claims[0]["job"]["id"] != job_id:
            print(f"FAILURE: Worker claimed WRONG job: {claims[0]['job']['id']}")
        else:
            print("SUCCESS: Exactly one worker claimed the job.")
            print(f"   Winner: {claims[0]['worker_id']} (Token: {claims[0]['lease_token']})")
    elif not claims:
        print("FAILURE: No one claimed the job (unexpected).")
    else:
        print(f"FAILURE: {len(claims)} workers claimed the job! Double claim detected.")
        for claim in claims:
            print(f"   - {claim['worker_id']}: {claim['lease_token']}")

if __name__ == "__main__":
    asyncio.run(verify_no_double_claim())
