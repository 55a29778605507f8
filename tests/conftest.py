from typing import AsyncGenerator, Optional
from uuid import UUID

import httpx
import pytest
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.commands.enqueue_job import enqueue_job
from app.db.session import build_engine, build_sessionmaker, create_schema
from app.domain.models import JobSpec
from app.main import create_app
from app.services.stream_hub import StreamHub
from app.settings import Settings


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    # A file database so concurrent sessions see each other's commits.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(engine)


@pytest.fixture
def enqueue(session_factory):
    """Enqueues a job in its own transaction and returns its id."""
    counter = {"n": 0}

    async def _enqueue(
        priority: int = 0,
        owner_id: str = "owner-1",
        max_retries: Optional[int] = 3,
        payload: Optional[dict] = None,
    ) -> UUID:
        counter["n"] += 1
        async with session_factory() as session:
            async with session.begin():
                job = await enqueue_job(
                    session,
                    JobSpec(
                        message_id=f"msg-{counter['n']}",
                        conversation_id="conv-1",
                        owner_id=owner_id,
                        payload=payload or {"model": "test-model", "messages": []},
                        priority=priority,
                        max_retries=max_retries,
                    ),
                )
        return job.id

    return _enqueue


@pytest.fixture
def hub() -> StreamHub:
    return StreamHub()


@pytest.fixture
def api_app(session_factory, hub) -> FastAPI:
    # The lifespan is not run; state is wired by hand.
    app = create_app(Settings(SQLALCHEMY_DATABASE_URI="sqlite+aiosqlite://", DISPATCHER_ENABLED=False))
    app.state.session_factory = session_factory
    app.state.hub = hub
    return app


@pytest.fixture
async def client(api_app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=api_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", headers={"X-Owner-ID": "owner-1"}) as client:
        yield client
