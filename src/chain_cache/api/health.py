from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from chain_cache.core.container import get_sync_coordinator
from chain_cache.core.models import SourceHealthSnapshot
from chain_cache.sync.coordinator import SyncCoordinator

router = APIRouter(tags=["health"])


@router.get("/health")
def health(coordinator: SyncCoordinator = Depends(get_sync_coordinator)) -> dict[str, object]:
    degraded = coordinator.degraded_sources()
    return {
        "status": "degraded" if degraded else "ok",
        "service": "chain-cache",
        "sources": len(coordinator.pipelines),
        "degraded_sources": degraded,
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/sync", response_model=list[SourceHealthSnapshot])
def sync_health(coordinator: SyncCoordinator = Depends(get_sync_coordinator)) -> list[SourceHealthSnapshot]:
    return coordinator.health_snapshot()
