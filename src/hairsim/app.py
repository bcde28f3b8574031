"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from hairsim.api.routes import generation, payments
from hairsim.core import timezone  # noqa: F401  # sets TZ=UTC
from hairsim.core.config import Settings, configure_logging
from hairsim.core.database import setup_db_session
from hairsim.core.redis import close_redis, connect_redis
from hairsim.services.exceptions import ServiceError
from hairsim.services.generation.cache import GenerationCache
from hairsim.services.generation.job_tracker import JobTracker, WaitTimeEstimator
from hairsim.services.generation.orchestrator import GenerationOrchestrator
from hairsim.services.generation.replicate_client import ReplicateHairstyleProvider
from hairsim.services.payments.checkout import CheckoutService
from hairsim.services.payments.reconciler import PaymentReconciler
from hairsim.services.payments.stripe_client import StripeClient
from hairsim.services.quota.ledger import QuotaLedger
from hairsim.uow import create_uow_factory
from hairsim.workers.cache_sweep_worker import run_cache_sweep_worker

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func, worker_args: tuple, worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_cache_sweep_worker)
        worker_args: Positional arguments passed to coro_func on every (re)start
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

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
            # Sweep loops never return on their own
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(*worker_args))
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(*worker_args))
    task.add_done_callback(on_worker_done)
    return task


def build_components(settings: Settings, uow_factory, redis_client=None) -> dict:
    """Wire the generation-economy components from settings.

    Returns:
        Mapping of app.state attribute name to component
    """
    cache = GenerationCache(
        redis_client=redis_client,
        max_entries=settings.cache_max_entries,
        default_ttl=settings.cache_ttl_seconds,
        eviction_fraction=settings.cache_eviction_fraction,
    )
    tracker = JobTracker(
        estimator=WaitTimeEstimator(
            concurrency_factor=settings.queue_concurrency_factor,
            window_size=settings.queue_history_size,
            initial_average=settings.queue_initial_average_seconds,
        )
    )
    ledger = QuotaLedger(
        uow_factory,
        default_tier=settings.default_tier,
        free_daily_limit=settings.free_daily_limit,
        reservation_ttl=settings.quota_reservation_ttl_seconds,
    )
    provider = ReplicateHairstyleProvider(
        api_token=settings.replicate_api_token,
        model_version=settings.replicate_model_version,
    )
    orchestrator = GenerationOrchestrator(
        ledger=ledger,
        cache=cache,
        tracker=tracker,
        provider=provider,
        generation_timeout=settings.generation_timeout_seconds,
        cache_ttl=settings.cache_ttl_seconds,
        cache_hits_are_free=settings.cache_hits_are_free,
    )
    reconciler = PaymentReconciler(
        uow_factory,
        default_tier=settings.default_tier,
        free_daily_limit=settings.free_daily_limit,
    )
    checkout_service = CheckoutService(
        uow_factory,
        StripeClient(secret_key=settings.stripe_secret_key, client_url=settings.client_url),
        reconciler,
    )
    return {
        "generation_cache": cache,
        "job_tracker": tracker,
        "quota_ledger": ledger,
        "orchestrator": orchestrator,
        "checkout_service": checkout_service,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, database session factory, optional Redis, components
    - Shutdown: Stop the cache sweep worker, close Redis
    """
    settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    redis_client = await connect_redis(settings.redis_url)

    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    for name, component in build_components(settings, uow_factory, redis_client).items():
        setattr(app.state, name, component)

    shutdown_event = asyncio.Event()

    sweep_task = create_resilient_worker(
        run_cache_sweep_worker,
        (app.state.generation_cache, settings),
        "cache_sweep",
        shutdown_event,
    )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        redis=redis_client is not None,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    sweep_task.cancel()
    await asyncio.gather(sweep_task, return_exceptions=True)

    await close_redis(redis_client)


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render typed service failures as {"success": false, "error": kind, ...}."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request.service_error",
        path=request.url.path,
        error=exc.kind,
        message=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "request.unhandled_error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "InternalError", "message": "Internal server error"},
    )


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Hairsim Backend API",
        description="AI hairstyle generation quota, cache and credit payments",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ServiceError, service_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(generation.router)  # prefix="/api/simulation"
    app.include_router(payments.router)  # prefix="/api/payment"

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


# Create app instance for uvicorn
app = create_app()
