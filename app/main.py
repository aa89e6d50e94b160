"""
FastAPI app wiring for LabOps.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

import core.config as config
from core.db import DB, init_db
from core.services.archive_manager import run_retention_tick
from app.errors import register_exception_handlers
from app.middleware import configure_middleware
from app.routes.archive import router as archive_router
from app.routes.audit import router as audit_router
from app.routes.entities import router as entities_router
from app.routes.health import router as health_router
from app.routes.root import router as root_router


rate_limiter = None
retention_task = None


async def _retention_loop() -> None:
    if config.RETENTION_TICK_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.RETENTION_TICK_SECONDS)
        try:
            await asyncio.to_thread(run_retention_tick)
        except Exception as exc:
            config.logger.warning(f"Retention task error: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    global retention_task
    init_db()
    if config.RETENTION_TICK_SECONDS > 0:
        retention_task = asyncio.create_task(_retention_loop())
    try:
        yield
    finally:
        if retention_task:
            retention_task.cancel()
            try:
                await retention_task
            except asyncio.CancelledError:
                pass
        if rate_limiter:
            await rate_limiter.close()
        if DB.engine:
            DB.engine.dispose()


app = FastAPI(title="LabOps", redirect_slashes=False, lifespan=lifespan)
rate_limiter = configure_middleware(app)
app.state.operation_limiter = rate_limiter
register_exception_handlers(app)

# Archive routes first so /api/archive/... never falls through to the generic delete
app.include_router(archive_router)
app.include_router(audit_router)
app.include_router(entities_router)

# Health and root endpoints
app.include_router(health_router)
app.include_router(root_router)
