import asyncio
import logging
import signal
from typing import Callable, Dict, Optional

import httpx

from worker_sdk.client import WorkerClient
from worker_sdk.runner import Handler, Middleware, WorkerRunner

logger = logging.getLogger(__name__)

class Worker:
    """
    Convenience wrapper: registers handlers per job type, installs signal
    handlers for graceful shutdown and drives a WorkerRunner.

        worker = Worker("http://localhost:8000", "worker-1", channel="acquisition")

        @worker.handler("create_bid_plan")
        async def create_bid_plan(payload):
            ...
            return {"ok": True}

        asyncio.run(worker.run())
    """

    def __init__(
        self,
        base_url: str,
        worker_id: str,
        channel: Optional[str] = None,
        secret: Optional[str] = None,
        handlers: Optional[Dict[str, Handler]] = None,
        poll_interval: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = WorkerClient(base_url, worker_id, channel=channel, secret=secret, transport=transport)
        self.runner = WorkerRunner(self.client, handlers or {}, poll_interval=poll_interval)

    def handler(self, job_type: str) -> Callable[[Handler], Handler]:
        def register(fn: Handler) -> Handler:
            self.runner.handlers[job_type] = fn
            return fn
        return register

    def add_middleware(self, middleware: Middleware):
        self.runner.middlewares.append(middleware)

    async def run(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Windows support
                pass

        try:
            await self.runner.run()
        finally:
            await self.client.close()
            logger.info("Worker stopped")

    def stop(self):
        logger.info("Shutdown signal received")
        self.runner.stop()
