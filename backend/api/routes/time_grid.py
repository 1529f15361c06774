from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from api.deps import Actor, get_actor, get_services
from schemas.time_grid import TimeGridCreate, TimeSlotOut
from services.container import Services


router = APIRouter()


@router.get("/", response_model=list[TimeSlotOut])
def list_time_slots(
    academic_year_id: uuid.UUID,
    term_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[TimeSlotOut]:
    return services.reference.list_time_slots(actor.scope(academic_year_id, term_id))


@router.post("/", response_model=list[TimeSlotOut], status_code=201)
def create_time_grid(
    payload: TimeGridCreate,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[TimeSlotOut]:
    scope = actor.scope(payload.academic_year_id, payload.term_id)
    return services.reference.create_time_grid(scope, [s.model_dump() for s in payload.slots])
