from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query

from api.deps import Actor, get_actor, get_services
from schemas.adjustment import AdjustmentRecordOut, AdjustRequest, AdjustResponse
from schemas.version import ArchiveRequest, PublishRequest, VersionDetailOut, VersionOut
from services.container import Services


router = APIRouter()


@router.get("/", response_model=list[VersionOut])
def list_versions(
    academic_year_id: uuid.UUID,
    term_id: uuid.UUID,
    status: str | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[VersionOut]:
    return services.versions.list_versions(actor.scope(academic_year_id, term_id), status=status)


@router.get("/current", response_model=VersionOut | None)
def current_version(
    academic_year_id: uuid.UUID,
    term_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> VersionOut | None:
    return services.versions.get_current(actor.scope(academic_year_id, term_id))


@router.get("/{version_id}", response_model=VersionDetailOut)
def get_version(
    version_id: uuid.UUID,
    view: str = Query(default="full"),
    filter_id: uuid.UUID | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> VersionDetailOut:
    return services.versions.view(version_id, view=view, filter_id=filter_id, school_id=actor.school_id)


@router.post("/{version_id}/publish", response_model=VersionOut)
def publish_version(
    version_id: uuid.UUID,
    payload: PublishRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> VersionOut:
    services.versions.get(version_id, school_id=actor.school_id)
    return services.versions.publish(version_id, payload.effective_date, actor.id)


@router.post("/{version_id}/discard", response_model=VersionOut)
def discard_version(
    version_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> VersionOut:
    services.versions.get(version_id, school_id=actor.school_id)
    return services.versions.discard(version_id, actor.id)


@router.post("/{version_id}/archive", response_model=VersionOut)
def archive_version(
    version_id: uuid.UUID,
    payload: ArchiveRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> VersionOut:
    services.versions.get(version_id, school_id=actor.school_id)
    return services.versions.archive(
        version_id,
        payload.reason,
        actor.id,
        replacement_version_id=payload.replacement_version_id,
    )


@router.post("/{version_id}/adjustments", response_model=AdjustResponse)
def adjust_version(
    version_id: uuid.UUID,
    payload: AdjustRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> AdjustResponse:
    items = [a.model_dump(mode="json", exclude_none=True) for a in payload.adjustments]
    return services.adjustments.adjust(
        version_id,
        items,
        actor.id,
        validate_constraints=payload.validate_constraints,
        expected_revision=payload.expected_revision,
        school_id=actor.school_id,
    )


@router.get("/{version_id}/adjustments", response_model=list[AdjustmentRecordOut])
def adjustment_history(
    version_id: uuid.UUID,
    action: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[AdjustmentRecordOut]:
    services.versions.get(version_id, school_id=actor.school_id)
    return services.adjustments.history(version_id, action=action, since=since, until=until)
