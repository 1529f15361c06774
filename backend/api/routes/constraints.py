from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Query

from api.deps import Actor, get_actor, get_services
from schemas.constraint import ConstraintCreate, ConstraintOut, ConstraintUpdate
from services.container import Services


logger = logging.getLogger(__name__)


router = APIRouter()


@router.get("/", response_model=list[ConstraintOut])
def list_constraints(
    academic_year_id: uuid.UUID,
    scope: str | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[ConstraintOut]:
    return services.constraints.list_active(
        school_id=actor.school_id,
        academic_year_id=academic_year_id,
        scope=scope,
        include_inactive=include_inactive,
    )


@router.post("/", response_model=ConstraintOut, status_code=201)
def create_constraint(
    payload: ConstraintCreate,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ConstraintOut:
    data = payload.model_dump(exclude={"academic_year_id"})
    return services.constraints.add(
        school_id=actor.school_id,
        academic_year_id=payload.academic_year_id,
        data=data,
        actor_id=actor.id,
    )


@router.get("/{constraint_id}", response_model=ConstraintOut)
def get_constraint(
    constraint_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ConstraintOut:
    return services.constraints.get(constraint_id, school_id=actor.school_id)


@router.patch("/{constraint_id}", response_model=ConstraintOut)
def update_constraint(
    constraint_id: uuid.UUID,
    payload: ConstraintUpdate,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ConstraintOut:
    patch = payload.model_dump(exclude_unset=True)
    return services.constraints.update(constraint_id, patch, school_id=actor.school_id)


@router.delete("/{constraint_id}")
def delete_constraint(
    constraint_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> dict:
    services.constraints.remove(constraint_id, school_id=actor.school_id)
    return {"ok": True}
