from __future__ import annotations

from fastapi import APIRouter, Depends

from api.deps import Actor, get_actor, get_services
from models import Subject
from schemas.subject import SubjectCreate, SubjectOut
from services.container import Services


router = APIRouter()


@router.get("/", response_model=list[SubjectOut])
def list_subjects(
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[SubjectOut]:
    return services.reference.list_entities(Subject, actor.school_id)


@router.post("/", response_model=SubjectOut, status_code=201)
def create_subject(
    payload: SubjectCreate,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> SubjectOut:
    return services.reference.create_subject(actor.school_id, payload.model_dump())
