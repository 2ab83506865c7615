import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from orchestrator.api.v1.metrics import LEADER_STATUS
from orchestrator.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from orchestrator.settings import settings
from orchestrator.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)

class SchedulerService:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None, interval: Optional[float] = None):
        if session_factory is None:
            from orchestrator.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.interval = interval if interval is not None else settings.SCHEDULER_INTERVAL_SECONDS
        self._running = False
        self._task = None
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        LEADER_STATUS.set(0)
        logger.info("Scheduler service stopped.")

    async def tick(self, lock_session) -> None:
        # pg_try_advisory_lock is held by lock_session's connection; that session
        # is never committed so the connection (and the lock) stays with us.
        is_leader = await try_advisory_lock(lock_session)

        async with self.session_factory() as session:
            if is_leader:
                if not self._is_leader:
                    logger.info("Acquired leadership. Starting reaper.")
                    self._is_leader = True
                    LEADER_STATUS.set(1)
                await run_leader_tasks(session)
            elif self._is_leader:
                logger.info("Lost leadership. Stopping reaper.")
                self._is_leader = False
                LEADER_STATUS.set(0)

            await run_metrics_tasks(session)

    async def _loop(self):
        lock_session = None
        while self._running:
            try:
                if not lock_session:
                    lock_session = self.session_factory()
                await self.tick(lock_session)
            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
                self._is_leader = False
                LEADER_STATUS.set(0)

                # Drop the lock session; a fresh connection is taken on the next tick
                if lock_session:
                    await lock_session.close()
                    lock_session = None

            await asyncio.sleep(self.interval)

        if lock_session:
            await lock_session.close()
