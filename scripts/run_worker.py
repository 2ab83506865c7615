#!/usr/bin/env python3
"""
Runs a worker for the acquisition lane.

    ORCHESTRATOR_URL=http://localhost:8000 WORKER_ID=bid-planner-1 python scripts/run_worker.py
"""
import asyncio
import logging
import os
import time

from worker_sdk import Worker

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("run_worker")

worker = Worker(
    os.environ.get("ORCHESTRATOR_URL", "http://localhost:8000"),
    os.environ.get("WORKER_ID", "bid-planner-1"),
    channel=os.environ.get("WORKER_CHANNEL", "acquisition"),
    secret=os.environ.get("WORKER_SHARED_SECRET"),
)

async def timing(payload, call_next):
    start = time.perf_counter()
    try:
        return await call_next(payload)
    finally:
        logger.info("Handled %s in %.3fs", payload.get("candidate_id"), time.perf_counter() - start)

worker.add_middleware(timing)

@worker.handler("create_bid_plan")
async def create_bid_plan(payload: dict) -> dict:
    # A rerun after a lost lease must produce the same plan
    return {
        "candidate_id": payload["candidate_id"],
        "domain": payload.get("domain"),
        "status": "planned",
    }

if __name__ == "__main__":
    asyncio.run(worker.run())
