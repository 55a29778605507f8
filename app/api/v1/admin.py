from fastapi import APIRouter

from app.api.deps import AppSettings, DbSession, DispatcherDep
from app.commands.requeue_expired import requeue_stale_jobs

router = APIRouter()


@router.post("/dispatch")
async def trigger_dispatch(dispatcher: DispatcherDep):
    """Runs one dispatch pass to completion; meant for cron-style triggering."""
    processed = await dispatcher.run_once()
    return {"processed_count": processed}


@router.post("/requeue_stale")
async def trigger_requeue_stale(session: DbSession, settings: AppSettings):
    count = await requeue_stale_jobs(
        session,
        stale_after_seconds=settings.STALE_JOB_TIMEOUT_SECONDS,
        retry_base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        retry_max_delay=settings.RETRY_MAX_DELAY_SECONDS,
    )
    await session.commit()
    return {"requeued_count": count}
