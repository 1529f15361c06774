from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from api.deps import Actor, get_actor, get_services
from schemas.optimization import ApplyRequest, ApplyResponse, CompareRequest, SuggestionOut
from services.container import Services


router = APIRouter()


@router.get("/versions/{version_id}/optimization/suggestions", response_model=list[SuggestionOut])
def list_suggestions(
    version_id: uuid.UUID,
    suggestion_type: str | None = Query(default=None, alias="type"),
    priority: str | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[SuggestionOut]:
    found = services.optimization.suggest(
        version_id, type=suggestion_type, priority=priority, school_id=actor.school_id
    )
    return [s.as_dict() for s in found]


@router.post("/versions/{version_id}/optimization/apply", response_model=ApplyResponse)
def apply_suggestions(
    version_id: uuid.UUID,
    payload: ApplyRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ApplyResponse:
    return services.optimization.apply(
        version_id, payload.suggestion_ids, payload.mode, actor.id, school_id=actor.school_id
    )


@router.get("/versions/{version_id}/analytics")
def version_analytics(
    version_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> dict:
    return services.optimization.metrics(version_id, school_id=actor.school_id)


@router.post("/scenarios/compare")
def compare_scenarios(
    payload: CompareRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> dict:
    return services.optimization.compare(
        payload.version_ids, payload.criteria, payload.weightings, school_id=actor.school_id
    )
