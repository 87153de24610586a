import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI

from taskpilot.config import settings
from taskpilot.middleware.errors import register_exception_handlers
from taskpilot.routes.digests import router as digests_router
from taskpilot.routes.health import router as health_router
from taskpilot.routes.receipts import router as receipts_router
from taskpilot.routes.tasks import router as tasks_router
from taskpilot.services.container import build_services

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level.upper())
    ),
    logger_factory=structlog.PrintLoggerFactory(),
)

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    log.info("starting", env=settings.app_env)
    async with httpx.AsyncClient(timeout=settings.completion_timeout_seconds) as http:
        app.state.services = await build_services(settings, http)
        yield
    log.info("shutdown")


app = FastAPI(title="Taskpilot", version="0.1.0", lifespan=lifespan)

register_exception_handlers(app)

app.include_router(health_router)
app.include_router(tasks_router)
app.include_router(receipts_router)
app.include_router(digests_router)
