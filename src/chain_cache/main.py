import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

from chain_cache import __version__
from chain_cache.api.entities import router as entities_router
from chain_cache.api.health import router as health_router
from chain_cache.core.config import get_settings
from chain_cache.core.container import get_sync_coordinator
from chain_cache.core.logging import setup_logging

settings = get_settings()
setup_logging(settings.log_level)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    coordinator = None
    coordinator_task = None
    if settings.sync_enabled:
        coordinator = get_sync_coordinator()
        coordinator_task = asyncio.create_task(coordinator.run_forever(), name="sync-coordinator")
    try:
        yield
    finally:
        if coordinator is not None:
            await coordinator.stop()
        if coordinator_task is not None:
            coordinator_task.cancel()
            with suppress(asyncio.CancelledError):
                await coordinator_task


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="Queryable cache over on-chain task events, kept in sync with confirmation gating and gap recovery.",
    lifespan=_lifespan,
)

app.include_router(health_router)
app.include_router(entities_router)


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "Chain cache sync service is running."}
