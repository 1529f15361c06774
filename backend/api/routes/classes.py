from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from api.deps import Actor, get_actor, get_services
from models import SchoolClass
from schemas.school_class import ClassSubjectCreate, ClassSubjectOut, SchoolClassCreate, SchoolClassOut
from services.container import Services


router = APIRouter()


@router.get("/", response_model=list[SchoolClassOut])
def list_classes(
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[SchoolClassOut]:
    return services.reference.list_entities(SchoolClass, actor.school_id)


@router.post("/", response_model=SchoolClassOut, status_code=201)
def create_class(
    payload: SchoolClassCreate,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> SchoolClassOut:
    return services.reference.create_class(actor.school_id, payload.model_dump())


@router.post("/{class_id}/subjects", response_model=ClassSubjectOut, status_code=201)
def assign_subject(
    class_id: uuid.UUID,
    payload: ClassSubjectCreate,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ClassSubjectOut:
    return services.reference.assign_subject(
        actor.school_id,
        class_id=class_id,
        subject_id=payload.subject_id,
        teacher_ids=payload.teacher_ids,
        weekly_frequency=payload.weekly_frequency,
    )
