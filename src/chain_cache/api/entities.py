from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from chain_cache.cache.entity_store import EntityStore
from chain_cache.core.container import get_entity_reconciler, get_entity_store
from chain_cache.core.errors import SourceUnavailable, TransientSourceError
from chain_cache.core.models import ProjectedEntity
from chain_cache.sync.reconciler import EntityReconciler

router = APIRouter(prefix="/entities", tags=["entities"])


@router.get("", response_model=list[ProjectedEntity])
def list_entities(
    owner: str = Query(..., min_length=42, max_length=42),
    source_id: str | None = Query(default=None),
    include_completed: bool = Query(default=True),
    include_deleted: bool = Query(default=False),
    limit: int = Query(default=200, ge=1, le=2000),
    store: EntityStore = Depends(get_entity_store),
) -> list[ProjectedEntity]:
    return store.list_by_owner(
        owner,
        source_id=source_id,
        include_completed=include_completed,
        include_deleted=include_deleted,
        limit=limit,
    )


@router.get("/{source_id}/{entity_id}", response_model=ProjectedEntity)
def get_entity(
    source_id: str,
    entity_id: str,
    store: EntityStore = Depends(get_entity_store),
) -> ProjectedEntity:
    entity = store.get(source_id, entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"entity {source_id}/{entity_id} not found")
    return entity


@router.post("/{source_id}/{entity_id}/reconcile", response_model=ProjectedEntity)
def reconcile_entity(
    source_id: str,
    entity_id: str,
    reconciler: EntityReconciler = Depends(get_entity_reconciler),
) -> ProjectedEntity:
    try:
        return reconciler.reconcile(source_id, entity_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc).strip("'\"")) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid entity id: {entity_id}") from exc
    except (SourceUnavailable, TransientSourceError) as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
