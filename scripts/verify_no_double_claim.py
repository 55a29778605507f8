#!/usr/bin/env python3
"""
Races many concurrent claims against the configured database and checks that no job
is claimed twice and the concurrency ceiling holds.
"""
import asyncio
import sys
import uuid

from sqlalchemy import func, select

from app.commands.dequeue_job import dequeue_job
from app.commands.enqueue_job import enqueue_job
from app.db.models import GenerationJob
from app.db.session import build_engine, build_sessionmaker, create_schema
from app.domain.models import JobSpec
from app.domain.states import ACTIVE_STATES
from app.settings import settings

JOBS = 20
CLAIMERS = 40
MAX_CONCURRENT = 5


async def verify_no_double_claim():
    engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)
    session_factory = build_sessionmaker(engine)
    await create_schema(engine)

    async with session_factory() as session:
        in_flight = await session.scalar(
            select(func.count()).select_from(GenerationJob).where(GenerationJob.status.in_(ACTIVE_STATES))
        )
    if in_flight:
        print(f"FAILURE: {in_flight} jobs already in flight; run against an idle database.")
        await engine.dispose()
        return 1

    owner_id = f"owner-concurrency-{uuid.uuid4()}"
    print(f"1. Creating {JOBS} jobs...")
    async with session_factory() as session:
        async with session.begin():
            for i in range(JOBS):
                await enqueue_job(session, JobSpec(
                    message_id=f"msg-{i}",
                    conversation_id="conv-concurrency",
                    owner_id=owner_id,
                    payload={"task": "concurrency_test"},
                    priority=i,
                ))

    async def claim():
        async with session_factory() as session:
            async with session.begin():
                job = await dequeue_job(session, MAX_CONCURRENT)
                return job.id if job else None

    print(f"2. Racing {CLAIMERS} concurrent claims (ceiling {MAX_CONCURRENT})...")
    results = await asyncio.gather(*(claim() for _ in range(CLAIMERS)))
    claimed = [job_id for job_id in results if job_id is not None]

    print(f"3. Results: {len(claimed)} claims, {len(set(claimed))} distinct jobs.")
    await engine.dispose()

    if len(claimed) != len(set(claimed)):
        print("FAILURE: Double claim detected.")
        return 1
    if len(claimed) > MAX_CONCURRENT:
        print("FAILURE: Concurrency ceiling exceeded.")
        return 1
    print("SUCCESS: Every job was claimed at most once and the ceiling held.")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(verify_no_double_claim()))
