"""FastAPI application factory."""

# Import timezone enforcement (sets TZ=UTC)
import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from manyfutures.api.routes import jobs, subscriptions
from manyfutures.core import timezone  # noqa: F401
from manyfutures.core.config import Settings, configure_logging
from manyfutures.core.database import setup_db_session
from manyfutures.services.cost_governor import CostGovernor
from manyfutures.services.generation.openai_client import OpenAIResponsesGenerator
from manyfutures.services.notifications import LoggingNotificationSender
from manyfutures.services.retry_policy import RetryPolicy
from manyfutures.uow import create_uow_factory
from manyfutures.workers.episode_worker import WorkerContext, run_episode_worker

logger = structlog.get_logger()

RESTART_DELAY = 1  # Fixed 1 second delay between restarts


def create_resilient_worker(
    worker_factory: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
) -> asyncio.Task:
    """Create a worker with automatic restart on failure.

    Args:
        worker_factory: Zero-argument callable returning the worker coroutine
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """

    def on_worker_done(task: asyncio.Task):
        # Check if shutdown was requested
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        # Check if task was cancelled (normal shutdown)
        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Worker stopped cleanly (unexpected for infinite loop workers)
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            # Check again if shutdown was requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(worker_factory())
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(worker_factory())
    task.add_done_callback(on_worker_done)
    return task


def build_worker_contexts(settings: Settings, uow_factory) -> list[WorkerContext]:
    """One context per worker loop, each with a distinct worker id."""
    generator = OpenAIResponsesGenerator(settings)
    governor = CostGovernor(settings)
    retry_policy = RetryPolicy.from_settings(settings)
    notifier = LoggingNotificationSender()

    return [
        WorkerContext(
            uow_factory=uow_factory,
            settings=settings,
            generator=generator,
            governor=governor,
            retry_policy=retry_policy,
            notifier=notifier,
            worker_id=f"{settings.worker_id}-{index}",
        )
        for index in range(settings.worker_concurrency)
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Initialize database session factory, configure logging, start workers
    - Shutdown: Stop workers

    Workers automatically restart on failure after a fixed delay.
    """
    settings = app.state.settings
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory

    shutdown_event = asyncio.Event()
    worker_tasks = []
    for ctx in build_worker_contexts(settings, uow_factory):
        worker_tasks.append(
            create_resilient_worker(
                lambda ctx=ctx: run_episode_worker(ctx),
                f"episode_worker:{ctx.worker_id}",
                shutdown_event,
            )
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        workers=len(worker_tasks),
    )

    yield

    # Shutdown: Signal workers to stop
    logger.info("application.shutdown")
    shutdown_event.set()

    for task in worker_tasks:
        task.cancel()

    # Wait for cancellation to complete (ignore CancelledError)
    await asyncio.gather(*worker_tasks, return_exceptions=True)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use (loaded from the environment when omitted)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Many Futures Scheduler API",
        description="Episode delivery scheduling and spend control",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs.router)
    app.include_router(subscriptions.router)

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app
