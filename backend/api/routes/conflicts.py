from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from api.deps import Actor, get_actor, get_services
from core.errors import NotFoundError
from schemas.conflict import BulkResolveRequest, ConflictOut, ResolveRequest
from services.container import Services


router = APIRouter()


def _own_conflict(services: Services, conflict_id: uuid.UUID, actor: Actor) -> None:
    conflict = services.detector.get(conflict_id)
    try:
        services.versions.get(conflict.version_id, school_id=actor.school_id)
    except NotFoundError:
        raise NotFoundError("conflict_not_found", details={"id": str(conflict_id)}) from None


@router.get("/versions/{version_id}/conflicts", response_model=list[ConflictOut])
def list_conflicts(
    version_id: uuid.UUID,
    conflict_type: str | None = Query(default=None, alias="type"),
    severity: str | None = Query(default=None),
    resolved: bool | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[ConflictOut]:
    services.versions.get(version_id, school_id=actor.school_id)
    return services.detector.list_conflicts(
        version_id, conflict_type=conflict_type, severity=severity, resolved=resolved
    )


@router.post("/versions/{version_id}/conflicts/scan", response_model=list[ConflictOut])
def scan_conflicts(
    version_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[ConflictOut]:
    services.versions.get(version_id, school_id=actor.school_id)
    return services.detector.scan(version_id)


@router.post("/conflicts/bulk-resolve", response_model=list[ConflictOut])
def bulk_resolve(
    payload: BulkResolveRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[ConflictOut]:
    for cid in payload.conflict_ids:
        _own_conflict(services, cid, actor)
    return services.detector.bulk_resolve(payload.conflict_ids, payload.method, actor.id, notes=payload.notes)


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictOut)
def resolve_conflict(
    conflict_id: uuid.UUID,
    payload: ResolveRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ConflictOut:
    _own_conflict(services, conflict_id, actor)
    return services.detector.resolve(
        conflict_id,
        payload.method,
        payload.resolution_data,
        actor.id,
        notes=payload.notes,
        expected_revision=payload.expected_revision,
    )
