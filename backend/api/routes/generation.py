from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Query

from api.deps import Actor, get_actor, get_services
from schemas.generation import GenerateRequest, JobOut, RegenerateRequest
from services.container import Services


logger = logging.getLogger(__name__)


router = APIRouter()


@router.post("/generate", response_model=JobOut, status_code=202)
def generate(
    payload: GenerateRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JobOut:
    scope = actor.scope(payload.academic_year_id, payload.term_id)
    return services.orchestrator.submit(scope, payload.parameters(), actor.id)


@router.post("/regenerate", response_model=JobOut, status_code=202)
def regenerate(
    payload: RegenerateRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JobOut:
    mods = payload.modifications.model_dump(mode="json", exclude_none=True)
    return services.orchestrator.regenerate(
        payload.base_version_id,
        mods,
        payload.reason,
        actor.id,
        school_id=actor.school_id,
    )


@router.get("/jobs", response_model=list[JobOut])
def list_jobs(
    academic_year_id: uuid.UUID,
    term_id: uuid.UUID,
    state: str | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[JobOut]:
    return services.orchestrator.list_jobs(actor.scope(academic_year_id, term_id), state=state)


@router.get("/jobs/{job_id}", response_model=JobOut)
def get_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JobOut:
    return services.orchestrator.get_status(job_id, school_id=actor.school_id)


@router.post("/jobs/{job_id}/cancel", response_model=JobOut)
def cancel_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JobOut:
    return services.orchestrator.cancel(job_id, school_id=actor.school_id)
