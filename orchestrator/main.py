import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker

from orchestrator.settings import settings
from orchestrator.api.v1.jobs import router as jobs_router
from orchestrator.api.v1.workers import router as workers_router
from orchestrator.api.v1.admin import router as admin_router
from orchestrator.api.v1.metrics import router as metrics_router
from orchestrator.api.v1.lifecycle import router as lifecycle_router
from orchestrator.api.v1.decisions import router as decisions_router
from orchestrator.logging_setup import configure_logging
from orchestrator.services.notifier import WorkerPoolNotifier, build_notifier

logger = logging.getLogger(__name__)

def create_app(
    session_factory: Optional[async_sessionmaker] = None,
    notifier: Optional[WorkerPoolNotifier] = None,
    run_background_tasks: bool = True,
) -> FastAPI:
    if session_factory is None:
        from orchestrator.db.session import AsyncSessionLocal
        session_factory = AsyncSessionLocal
    notifier = notifier or build_notifier()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from orchestrator.scheduler.service import SchedulerService
        from orchestrator.services.reconciler import NotificationReconciler

        configure_logging()

        scheduler = None
        reconciler = None
        if run_background_tasks:
            # Reaper + queue gauges
            scheduler = SchedulerService(session_factory=session_factory)
            await scheduler.start()

            # Missed worker pool wake-ups
            reconciler = NotificationReconciler(session_factory=session_factory, notifier=notifier)
            await reconciler.start()

        yield

        if scheduler:
            await scheduler.stop()
        if reconciler:
            await reconciler.stop()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )
    app.state.session_factory = session_factory
    app.state.notifier = notifier

    app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
    app.include_router(workers_router, prefix="/api/v1/workers", tags=["workers"])
    app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
    app.include_router(lifecycle_router, prefix="/api/v1/domains", tags=["lifecycle"])
    app.include_router(decisions_router, prefix="/api/v1/acquisition", tags=["decisions"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app

app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
