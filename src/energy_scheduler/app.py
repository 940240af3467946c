"""FastAPI application exposing the energy scheduler."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .action_executor import executor
from .integrations.config import settings
from .integrations.utils import configure_logging, logger
from .planning_scheduler import planner
from .router import router as api_router

configure_logging()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    if not settings.background_tasks:
        logger.info("Background tasks disabled; planner and executor not started")
        yield
        return

    await planner.start()
    await executor.start()
    try:
        yield
    finally:
        await executor.stop()
        await planner.stop()


app = FastAPI(
    title="Energy Scheduler API",
    version="1.0.0",
    description=(
        "Plans device on/off actions into the cheapest hours of the day-ahead "
        "electricity price curve and executes them."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    """Simple readiness check."""
    return {"status": "ok"}
