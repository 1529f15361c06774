from __future__ import annotations

from fastapi import APIRouter, Depends

from api.deps import Actor, get_actor, get_services
from models import Teacher
from schemas.teacher import TeacherCreate, TeacherOut
from services.container import Services


router = APIRouter()


@router.get("/", response_model=list[TeacherOut])
def list_teachers(
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[TeacherOut]:
    return services.reference.list_entities(Teacher, actor.school_id)


@router.post("/", response_model=TeacherOut, status_code=201)
def create_teacher(
    payload: TeacherCreate,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> TeacherOut:
    return services.reference.create_teacher(actor.school_id, payload.model_dump())
