from __future__ import annotations

from fastapi import APIRouter, Depends

from api.deps import get_actor
from api.routes import classes, conflicts, constraints, generation, optimization, rooms, subjects, teachers, time_grid, versions


api_router = APIRouter()

# Every route needs a bearer token issued by the identity provider.
_protected = [Depends(get_actor)]
api_router.include_router(constraints.router, prefix="/constraints", tags=["constraints"], dependencies=_protected)
api_router.include_router(time_grid.router, prefix="/time-grid", tags=["reference"], dependencies=_protected)
api_router.include_router(teachers.router, prefix="/teachers", tags=["reference"], dependencies=_protected)
api_router.include_router(rooms.router, prefix="/rooms", tags=["reference"], dependencies=_protected)
api_router.include_router(subjects.router, prefix="/subjects", tags=["reference"], dependencies=_protected)
api_router.include_router(classes.router, prefix="/classes", tags=["reference"], dependencies=_protected)
api_router.include_router(generation.router, tags=["generation"], dependencies=_protected)
api_router.include_router(versions.router, prefix="/versions", tags=["versions"], dependencies=_protected)
api_router.include_router(conflicts.router, tags=["conflicts"], dependencies=_protected)
api_router.include_router(optimization.router, tags=["optimization"], dependencies=_protected)
