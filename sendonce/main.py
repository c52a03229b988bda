"""
Send-once finalization service.
Main FastAPI application entry point: settings API plus the background workers.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from sendonce.config import get_settings
from sendonce.api.router import api_router
from sendonce.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("sendonce")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Send-once service starting up (env=%s)", settings.app_env)

    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []

    if settings.send_once_finalizer_enabled:
        from sendonce.workers.send_once_finalizer import run_send_once_finalizer
        worker_tasks.append(asyncio.create_task(run_send_once_finalizer()))
        logger.info("Send-once finalizer worker started")
    else:
        logger.info("Send-once finalizer disabled (SEND_ONCE_FINALIZER_ENABLED=false)")

    if settings.event_listener_enabled:
        from sendonce.workers.broadcast_complete import run_broadcast_complete_listener
        worker_tasks.append(asyncio.create_task(run_broadcast_complete_listener()))
        logger.info("Broadcast-complete listener started")

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("Send-once service shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from sendonce.database import dispose_engine
    from sendonce.utils.redis_client import close_redis
    await dispose_engine()
    await close_redis()
    logger.info("Send-once service shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Send Once",
        description="Finalizes send-once email campaigns after one complete delivery pass",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
