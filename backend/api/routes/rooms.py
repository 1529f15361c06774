from __future__ import annotations

from fastapi import APIRouter, Depends

from api.deps import Actor, get_actor, get_services
from models import Room
from schemas.room import RoomCreate, RoomOut
from services.container import Services


router = APIRouter()


@router.get("/", response_model=list[RoomOut])
def list_rooms(
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[RoomOut]:
    return services.reference.list_entities(Room, actor.school_id)


@router.post("/", response_model=RoomOut, status_code=201)
def create_room(
    payload: RoomCreate,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> RoomOut:
    return services.reference.create_room(actor.school_id, payload.model_dump())
