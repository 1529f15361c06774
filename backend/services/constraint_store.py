from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import NotFoundError, ValidationError
from models import Room, SchedulingConstraint, SchoolClass, Subject, Teacher
from models.base import utcnow
from services.repository import Repository, get_or_404
from solver.constraints import (
    ConstraintRule,
    dump_parameters,
    parse_parameters,
    referenced_ids,
    scope_target_errors,
)


logger = logging.getLogger(__name__)

_ENTITY_MODELS = {
    "teacher": Teacher,
    "room": Room,
    "subject": Subject,
    "class": SchoolClass,
}

_PATCHABLE = {"scope", "is_hard", "weight", "parameters", "name", "description", "priority", "is_active"}

SnapshotKey = tuple[uuid.UUID, uuid.UUID]


def _pydantic_errors(exc: PydanticValidationError) -> list[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "kind")
        out.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return out


def to_rule(row: SchedulingConstraint) -> ConstraintRule:
    return ConstraintRule(
        id=row.id,
        scope=str(row.scope),
        kind=str(row.kind),
        is_hard=bool(row.is_hard),
        weight=None if row.weight is None else float(row.weight),
        params=parse_parameters(str(row.kind), dict(row.parameters or {})),
        name=row.name or "",
    )


class ConstraintStore:
    """Typed scheduling rules per (school, academic year).

    Solver runs read an immutable snapshot; any mutation bumps the key's
    generation so runs started afterwards see the change.
    """

    def __init__(self, repo: Repository):
        self._repo = repo
        self._lock = threading.Lock()
        self._generation: dict[SnapshotKey, int] = defaultdict(int)
        self._cache: dict[SnapshotKey, tuple[int, tuple[ConstraintRule, ...]]] = {}

    # ------------------------
    # Validation
    # ------------------------
    def _validate(self, db: Session, *, school_id: uuid.UUID, data: dict[str, Any]) -> dict[str, Any]:
        errors: list[str] = []
        kind = data.get("kind")
        try:
            params = parse_parameters(str(kind), dict(data.get("parameters") or {}))
        except PydanticValidationError as exc:
            raise ValidationError(
                "invalid_constraint_parameters",
                f"Parameters do not match the {kind} schema.",
                details={"errors": _pydantic_errors(exc)},
            ) from exc

        is_hard = bool(data.get("is_hard", True))
        weight = data.get("weight")
        if is_hard and weight is not None:
            errors.append("hard constraints must not carry a weight")
        if not is_hard and (weight is None or float(weight) <= 0):
            errors.append("soft constraints need a positive weight")

        errors.extend(scope_target_errors(str(data.get("scope")), params))

        for entity, ref in referenced_ids(params).items():
            model = _ENTITY_MODELS[entity]
            exists = db.execute(
                select(model.id).where(model.id == ref).where(model.school_id == school_id).limit(1)
            ).first()
            if exists is None:
                errors.append(f"{entity} {ref} does not exist in this school")

        if errors:
            raise ValidationError("invalid_constraint", "Constraint failed validation.", details={"errors": errors})

        clean = dict(data)
        clean["parameters"] = dump_parameters(params)
        clean["weight"] = None if is_hard else float(weight)
        clean["is_hard"] = is_hard
        return clean

    def _bump(self, school_id: uuid.UUID, academic_year_id: uuid.UUID) -> None:
        key = (school_id, academic_year_id)
        with self._lock:
            self._generation[key] += 1
            self._cache.pop(key, None)

    # ------------------------
    # Operations
    # ------------------------
    def add(
        self,
        *,
        school_id: uuid.UUID,
        academic_year_id: uuid.UUID,
        data: dict[str, Any],
        actor_id: uuid.UUID | None = None,
    ) -> SchedulingConstraint:
        def _work(db: Session) -> SchedulingConstraint:
            clean = self._validate(db, school_id=school_id, data=data)
            row = SchedulingConstraint(
                school_id=school_id,
                academic_year_id=academic_year_id,
                scope=clean["scope"],
                kind=clean["kind"],
                is_hard=clean["is_hard"],
                weight=clean["weight"],
                parameters=clean["parameters"],
                name=(clean.get("name") or clean["kind"]).strip(),
                description=clean.get("description"),
                priority=clean.get("priority") or "medium",
                is_active=bool(clean.get("is_active", True)),
                created_by=actor_id,
            )
            db.add(row)
            db.flush()
            return row

        row = self._repo.run(_work)
        self._bump(school_id, academic_year_id)
        logger.info("Constraint %s added (%s, hard=%s)", row.id, row.kind, row.is_hard)
        return row

    def update(self, constraint_id: uuid.UUID, patch: dict[str, Any], *, school_id: uuid.UUID | None = None) -> SchedulingConstraint:
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValidationError("invalid_constraint", details={"errors": [f"cannot update {', '.join(sorted(unknown))}"]})

        def _work(db: Session) -> SchedulingConstraint:
            row = get_or_404(db, SchedulingConstraint, constraint_id, "constraint_not_found")
            if school_id is not None and row.school_id != school_id:
                raise_not_found(constraint_id)
            merged = {
                "scope": row.scope,
                "kind": row.kind,
                "is_hard": row.is_hard,
                "weight": row.weight,
                "parameters": dict(row.parameters or {}),
            }
            merged.update(patch)
            # Switching soft -> hard drops the weight unless the caller sent one explicitly.
            if "is_hard" in patch and patch["is_hard"] and "weight" not in patch:
                merged["weight"] = None
            clean = self._validate(db, school_id=row.school_id, data=merged)
            row.scope = clean["scope"]
            row.is_hard = clean["is_hard"]
            row.weight = clean["weight"]
            row.parameters = clean["parameters"]
            for name in ("name", "description", "priority", "is_active"):
                if name in patch:
                    setattr(row, name, patch[name])
            row.updated_at = utcnow()
            db.flush()
            return row

        row = self._repo.run(_work)
        self._bump(row.school_id, row.academic_year_id)
        logger.info("Constraint %s updated (%s)", row.id, ", ".join(sorted(patch)))
        return row

    def remove(self, constraint_id: uuid.UUID, *, school_id: uuid.UUID | None = None) -> None:
        def _work(db: Session) -> tuple[uuid.UUID, uuid.UUID]:
            row = get_or_404(db, SchedulingConstraint, constraint_id, "constraint_not_found")
            if school_id is not None and row.school_id != school_id:
                raise_not_found(constraint_id)
            key = (row.school_id, row.academic_year_id)
            db.delete(row)
            return key

        key = self._repo.run(_work)
        self._bump(*key)
        logger.info("Constraint %s removed", constraint_id)

    def get(self, constraint_id: uuid.UUID, *, school_id: uuid.UUID | None = None) -> SchedulingConstraint:
        def _work(db: Session) -> SchedulingConstraint:
            row = get_or_404(db, SchedulingConstraint, constraint_id, "constraint_not_found")
            if school_id is not None and row.school_id != school_id:
                raise_not_found(constraint_id)
            return row

        return self._repo.run(_work)

    def list_active(
        self,
        *,
        school_id: uuid.UUID,
        academic_year_id: uuid.UUID,
        scope: str | None = None,
        include_inactive: bool = False,
    ) -> list[SchedulingConstraint]:
        def _work(db: Session) -> list[SchedulingConstraint]:
            q = (
                select(SchedulingConstraint)
                .where(SchedulingConstraint.school_id == school_id)
                .where(SchedulingConstraint.academic_year_id == academic_year_id)
            )
            if not include_inactive:
                q = q.where(SchedulingConstraint.is_active.is_(True))
            if scope is not None:
                q = q.where(SchedulingConstraint.scope == scope)
            q = q.order_by(SchedulingConstraint.created_at.asc(), SchedulingConstraint.id.asc())
            return list(db.execute(q).scalars().all())

        return self._repo.run(_work)

    def snapshot(self, school_id: uuid.UUID, academic_year_id: uuid.UUID) -> tuple[ConstraintRule, ...]:
        """Immutable view of the active rules; reused until the next mutation for the key."""

        key = (school_id, academic_year_id)
        with self._lock:
            generation = self._generation[key]
            cached = self._cache.get(key)
            if cached is not None and cached[0] == generation:
                return cached[1]

        rows = self.list_active(school_id=school_id, academic_year_id=academic_year_id)
        rules = tuple(to_rule(r) for r in rows)
        with self._lock:
            # A mutation that raced the read leaves the cache empty for the next caller.
            if self._generation[key] == generation:
                self._cache[key] = (generation, rules)
        return rules

    def generation(self, school_id: uuid.UUID, academic_year_id: uuid.UUID) -> int:
        with self._lock:
            return self._generation[(school_id, academic_year_id)]


def raise_not_found(constraint_id: uuid.UUID) -> None:
    raise NotFoundError("constraint_not_found", details={"id": str(constraint_id)})
