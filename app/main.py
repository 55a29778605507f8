import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from app.api.v1.admin import router as admin_router
from app.api.v1.jobs import router as jobs_router
from app.api.v1.metrics import router as metrics_router
from app.api.v1.notifications import router as notifications_router
from app.settings import Settings, settings as default_settings


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    from app.db.session import build_engine, build_sessionmaker, create_schema
    from app.scheduler.dispatcher import Dispatcher
    from app.scheduler.service import SchedulerService
    from app.services.cache import TTLCache
    from app.services.enrichment import ContextEnricher
    from app.services.generation import HttpGenerationClient
    from app.services.notifications import NotificationPublisher
    from app.services.stream_hub import StreamHub

    settings: Settings = app.state.settings
    configure_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("uvicorn")

    # 1. Storage
    engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)
    session_factory = build_sessionmaker(engine)
    await create_schema(engine)

    # 2. Shared services
    hub = StreamHub(retention_seconds=settings.STREAM_RETENTION_SECONDS)
    generator = HttpGenerationClient(settings.GENERATION_URL, timeout=settings.GENERATION_TIMEOUT_SECONDS)
    enricher = ContextEnricher(settings.CONTEXT_URL, TTLCache(settings.CONTEXT_CACHE_TTL_SECONDS))

    dispatcher = Dispatcher(
        session_factory,
        generator,
        hub,
        enricher=enricher,
        max_concurrent=settings.MAX_CONCURRENT_JOBS,
        poll_interval=settings.DISPATCH_POLL_INTERVAL_SECONDS,
        heartbeat_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
        retry_base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        retry_max_delay=settings.RETRY_MAX_DELAY_SECONDS,
    )
    scheduler = SchedulerService(
        engine,
        session_factory,
        hub=hub,
        interval=settings.SCHEDULER_INTERVAL_SECONDS,
        stale_after_seconds=settings.STALE_JOB_TIMEOUT_SECONDS,
        retry_base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        retry_max_delay=settings.RETRY_MAX_DELAY_SECONDS,
    )
    publisher = NotificationPublisher(session_factory, batch_size=settings.NOTIFICATION_BATCH_SIZE)

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.hub = hub
    app.state.dispatcher = dispatcher

    # 3. Background loops
    await scheduler.start()
    await publisher.start()
    if settings.DISPATCHER_ENABLED:
        await dispatcher.start()
    else:
        logger.info("Dispatcher loop disabled; use POST /api/v1/admin/dispatch to run passes.")

    yield

    # Shutdown
    await dispatcher.stop()
    await scheduler.stop()
    await publisher.stop()
    await generator.close()
    await enricher.close()
    await engine.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )
    app.state.settings = settings

    app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
    app.include_router(notifications_router, prefix="/api/v1/notifications", tags=["notifications"])
    app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
