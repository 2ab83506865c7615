import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, List, Optional
from uuid import UUID

from worker_sdk.client import WorkerClient

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Coroutine[Any, Any, dict]]
Middleware = Callable[[dict, Handler], Coroutine[Any, Any, dict]]

class UnknownJobTypeError(Exception):
    pass

class WorkerRunner:
    """
    Claim loop: claims a job, dispatches it to the handler registered for its
    job_type (through the middleware chain), keeps the lease alive with
    heartbeats and reports completion or failure.

    Handlers can run more than once for the same job when a lease expires
    mid-run, so they must be idempotent.
    """

    def __init__(
        self,
        client: WorkerClient,
        handlers: Dict[str, Handler],
        middlewares: Optional[List[Middleware]] = None,
        poll_interval: float = 1.0,
        heartbeat_interval: float = 10.0,
    ):
        self.client = client
        self.handlers = dict(handlers)
        self.middlewares: List[Middleware] = list(middlewares or [])
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.running = False
        self._shutdown_event = asyncio.Event()

    async def _wait(self, timeout: float):
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def run(self):
        self.running = True
        self._shutdown_event.clear()
        logger.info("Worker %s started (handlers: %s)", self.client.worker_id, ", ".join(sorted(self.handlers)))

        try:
            while self.running:
                try:
                    job_data = await self.client.claim()

                    if not job_data:
                        await self._wait(self.poll_interval)
                        continue

                    logger.info("Claimed job: %s", job_data["job"]["id"])
                    await self.process_job(job_data)

                except Exception as e:
                    logger.exception("Error in runner loop for worker %s: %s", self.client.worker_id, e)
                    await self._wait(5.0)
        finally:
            logger.info("Worker runner stopped")

    def stop(self):
        self.running = False
        self._shutdown_event.set()

    def _build_chain(self, handler: Handler) -> Handler:
        chain = handler
        # Apply middleware in reverse order (onion): the first added runs outermost
        for mw in reversed(self.middlewares):
            def make_wrapper(current_mw, current_chain):
                async def wrapper(payload):
                    return await current_mw(payload, current_chain)
                return wrapper
            chain = make_wrapper(mw, chain)
        return chain

    async def execute(self, job: dict) -> dict:
        handler = self.handlers.get(job.get("job_type"))
        if handler is None:
            raise UnknownJobTypeError(f"No handler registered for job type {job.get('job_type')!r}")
        return await self._build_chain(handler)(job["payload"])

    async def process_job(self, job_data: dict):
        try:
            job = job_data["job"]
            job_id = UUID(job["id"])
            lease_token = UUID(job_data["lease_token"])
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Received malformed job payload in runner: %s", e)
            return

        heartbeat_task = asyncio.create_task(self._heartbeat_loop(job_id, lease_token))

        try:
            result = await self.execute(job)

            completed = await self.client.complete(job_id, lease_token, result or {})
            if completed:
                logger.info("Job %s completed successfully", job_id)
            else:
                logger.error(
                    "Job %s handler succeeded but completion ACK failed; lease may be retried",
                    job_id,
                )

        except Exception as e:
            error_msg = f"{type(e).__name__}: {str(e)}"
            logger.error("Job %s failed: %s", job_id, error_msg)
            failed = await self.client.fail(job_id, lease_token, error_msg)
            if not failed:
                logger.error("Failed to report failure for job %s", job_id)

        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

    async def _heartbeat_loop(self, job_id: UUID, lease_token: UUID):
        try:
            while self.running:
                await asyncio.sleep(self.heartbeat_interval)
                if not self.running:
                    break
                logger.debug("Sending heartbeat for %s", job_id)
                if not await self.client.heartbeat(job_id, lease_token):
                    # Lease lost: another worker may reclaim the job after expiry
                    logger.warning("Heartbeat failed for %s; lease may be reclaimed", job_id)
                    break
        except asyncio.CancelledError:
            pass
