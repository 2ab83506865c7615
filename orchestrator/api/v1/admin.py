from fastapi import APIRouter, Query, Request

from orchestrator.api.deps import DbSession, get_notifier, get_session_factory
from orchestrator.commands.requeue_expired import requeue_expired_jobs
from orchestrator.commands.retry_failed import retry_failed_jobs
from orchestrator.services.reconciler import NotificationReconciler

router = APIRouter()

@router.post("/requeue_expired")
async def trigger_requeue_expired(session: DbSession):
    count = await requeue_expired_jobs(session)
    await session.commit()
    return {"requeued_count": count}

@router.post("/retry_failed")
async def trigger_retry_failed(session: DbSession, limit: int = Query(10, ge=1, le=500)):
    count = await retry_failed_jobs(session, limit=limit)
    await session.commit()
    return {"retried_count": count}

@router.post("/reconcile")
async def trigger_reconcile(request: Request):
    reconciler = NotificationReconciler(
        session_factory=get_session_factory(request),
        notifier=get_notifier(request),
    )
    notified = await reconciler.process_batch()
    return {"notified_count": notified}
