from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.auth.security import get_actor
from orchestrator.domain.models import Actor
from orchestrator.services.decisions import DecisionOrchestrator
from orchestrator.services.notifier import WorkerPoolNotifier

def get_session_factory(request: Request) -> async_sessionmaker:
    return request.app.state.session_factory

async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with get_session_factory(request)() as session:
        yield session

def get_notifier(request: Request) -> WorkerPoolNotifier:
    return request.app.state.notifier

def get_orchestrator(request: Request) -> DecisionOrchestrator:
    return DecisionOrchestrator(
        session_factory=get_session_factory(request),
        notifier=get_notifier(request),
    )

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
CurrentActor = Annotated[Actor, Depends(get_actor)]
Orchestrator = Annotated[DecisionOrchestrator, Depends(get_orchestrator)]
