from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import ConflictError, NotFoundError, ValidationError
from models import ClassSubject, Room, SchoolClass, Subject, Teacher, TimeSlot
from services.constraint_store import ConstraintStore
from services.repository import Repository, Scope
from solver.problem import (
    ClassInfo,
    ClassSubjectInfo,
    FixedPlacement,
    HintKey,
    Preferences,
    Problem,
    RoomInfo,
    Slot,
    SubjectInfo,
    TeacherInfo,
    TimeGrid,
)


logger = logging.getLogger(__name__)


def _clean_code(value: Any, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"invalid_{field}", f"{field} must not be blank.")
    return text


class ReferenceDataService:
    """Teachers, rooms, subjects, classes, class-subject assignments and the time grid."""

    def __init__(self, repo: Repository, constraints: ConstraintStore):
        self._repo = repo
        self._constraints = constraints

    # ------------------------
    # Time grid
    # ------------------------
    def create_time_grid(self, scope: Scope, slots: Iterable[Mapping[str, Any]]) -> list[TimeSlot]:
        rows = list(slots)
        if not rows:
            raise ValidationError("empty_time_grid", "A time grid needs at least one slot.")
        seen: set[tuple[int, int]] = set()
        for r in rows:
            key = (int(r["day"]), int(r["period"]))
            if key in seen:
                raise ValidationError("duplicate_slot", details={"day": key[0], "period": key[1]})
            seen.add(key)

        def _work(db: Session) -> list[TimeSlot]:
            exists = db.execute(
                select(TimeSlot.id)
                .where(TimeSlot.school_id == scope.school_id)
                .where(TimeSlot.academic_year_id == scope.academic_year_id)
                .where(TimeSlot.term_id == scope.term_id)
                .limit(1)
            ).first()
            if exists is not None:
                raise ConflictError("time_grid_exists", "The time grid for this term is already defined.")
            created = []
            for r in sorted(rows, key=lambda r: (int(r["day"]), int(r["period"]))):
                ts = TimeSlot(
                    school_id=scope.school_id,
                    academic_year_id=scope.academic_year_id,
                    term_id=scope.term_id,
                    day_of_week=int(r["day"]),
                    period=int(r["period"]),
                    start_time=r.get("start_time"),
                    end_time=r.get("end_time"),
                )
                db.add(ts)
                created.append(ts)
            try:
                db.flush()
            except IntegrityError as exc:
                raise ConflictError("time_grid_exists", "The time grid for this term is already defined.") from exc
            return created

        created = self._repo.run(_work)
        logger.info("Time grid created for %s with %s slots", scope, len(created))
        return created

    def list_time_slots(self, scope: Scope) -> list[TimeSlot]:
        def _work(db: Session) -> list[TimeSlot]:
            q = (
                select(TimeSlot)
                .where(TimeSlot.school_id == scope.school_id)
                .where(TimeSlot.academic_year_id == scope.academic_year_id)
                .where(TimeSlot.term_id == scope.term_id)
                .order_by(TimeSlot.day_of_week.asc(), TimeSlot.period.asc())
            )
            return list(db.execute(q).scalars().all())

        return self._repo.run(_work)

    def time_grid(self, scope: Scope) -> TimeGrid:
        return TimeGrid(Slot(int(s.day_of_week), int(s.period)) for s in self.list_time_slots(scope))

    # ------------------------
    # Entities
    # ------------------------
    def _create(self, model: type, school_id: uuid.UUID, data: dict[str, Any], conflict_code: str) -> Any:
        def _work(db: Session) -> Any:
            obj = model(school_id=school_id, **data)
            db.add(obj)
            try:
                db.flush()
            except IntegrityError as exc:
                raise ConflictError(conflict_code, details={"code": data.get("code")}) from exc
            return obj

        return self._repo.run(_work)

    def create_teacher(self, school_id: uuid.UUID, data: dict[str, Any]) -> Teacher:
        data = {**data, "code": _clean_code(data.get("code"), "code"), "full_name": _clean_code(data.get("full_name"), "full_name")}
        return self._create(Teacher, school_id, data, "teacher_code_exists")

    def create_room(self, school_id: uuid.UUID, data: dict[str, Any]) -> Room:
        data = {**data, "code": _clean_code(data.get("code"), "code"), "name": _clean_code(data.get("name"), "name")}
        return self._create(Room, school_id, data, "room_code_exists")

    def create_subject(self, school_id: uuid.UUID, data: dict[str, Any]) -> Subject:
        data = {**data, "code": _clean_code(data.get("code"), "code"), "name": _clean_code(data.get("name"), "name")}
        return self._create(Subject, school_id, data, "subject_code_exists")

    def create_class(self, school_id: uuid.UUID, data: dict[str, Any]) -> SchoolClass:
        data = {**data, "code": _clean_code(data.get("code"), "code"), "name": _clean_code(data.get("name"), "name")}
        return self._create(SchoolClass, school_id, data, "class_code_exists")

    def assign_subject(
        self,
        school_id: uuid.UUID,
        *,
        class_id: uuid.UUID,
        subject_id: uuid.UUID,
        teacher_ids: list[uuid.UUID],
        weekly_frequency: int | None = None,
    ) -> ClassSubject:
        if not teacher_ids:
            raise ValidationError("teacher_required", "A class subject needs at least one teacher.")
        if len(set(teacher_ids)) != len(teacher_ids):
            raise ValidationError("duplicate_teacher", "A teacher is listed twice.")

        def _work(db: Session) -> ClassSubject:
            for model, ref, code in (
                (SchoolClass, class_id, "class_not_found"),
                (Subject, subject_id, "subject_not_found"),
            ):
                obj = db.get(model, ref)
                if obj is None or obj.school_id != school_id:
                    raise NotFoundError(code, details={"id": str(ref)})
            for tid in teacher_ids:
                t = db.get(Teacher, tid)
                if t is None or t.school_id != school_id:
                    raise NotFoundError("teacher_not_found", details={"id": str(tid)})
            row = ClassSubject(
                school_id=school_id,
                class_id=class_id,
                subject_id=subject_id,
                teacher_ids=[str(t) for t in teacher_ids],
                weekly_frequency=weekly_frequency,
            )
            db.add(row)
            try:
                db.flush()
            except IntegrityError as exc:
                raise ConflictError("class_subject_exists") from exc
            return row

        return self._repo.run(_work)

    def list_entities(self, model: type, school_id: uuid.UUID) -> list[Any]:
        def _work(db: Session) -> list[Any]:
            q = select(model).where(model.school_id == school_id)
            if hasattr(model, "code"):
                q = q.order_by(model.code.asc())
            return list(db.execute(q).scalars().all())

        return self._repo.run(_work)

    # ------------------------
    # Solver input
    # ------------------------
    def load_problem(
        self,
        scope: Scope,
        *,
        preferences: Preferences | None = None,
        excluded_slots: Iterable[Slot] = (),
        fixed: Iterable[FixedPlacement] = (),
        hints: Mapping[HintKey, Slot] | None = None,
        constraints: tuple | None = None,
    ) -> Problem:
        """Domain snapshot for one solve; the constraint snapshot is captured here."""

        rules = constraints if constraints is not None else self._constraints.snapshot(scope.school_id, scope.academic_year_id)

        def _work(db: Session) -> Problem:
            sid = scope.school_id
            slots = db.execute(
                select(TimeSlot)
                .where(TimeSlot.school_id == sid)
                .where(TimeSlot.academic_year_id == scope.academic_year_id)
                .where(TimeSlot.term_id == scope.term_id)
            ).scalars().all()
            teachers = db.execute(select(Teacher).where(Teacher.school_id == sid).where(Teacher.is_active.is_(True))).scalars().all()
            rooms = db.execute(select(Room).where(Room.school_id == sid).where(Room.is_active.is_(True))).scalars().all()
            subjects = db.execute(select(Subject).where(Subject.school_id == sid).where(Subject.is_active.is_(True))).scalars().all()
            classes = db.execute(
                select(SchoolClass)
                .where(SchoolClass.school_id == sid)
                .where(SchoolClass.academic_year_id == scope.academic_year_id)
                .where(SchoolClass.is_active.is_(True))
            ).scalars().all()
            class_ids = [c.id for c in classes]
            assignments = []
            if class_ids:
                assignments = db.execute(
                    select(ClassSubject).where(ClassSubject.class_id.in_(class_ids))
                ).scalars().all()
            active_subjects = {s.id for s in subjects}
            assignments = [a for a in assignments if a.subject_id in active_subjects]

            return Problem(
                grid=TimeGrid(Slot(int(s.day_of_week), int(s.period)) for s in slots),
                teachers={t.id: TeacherInfo(id=t.id, code=t.code, max_per_day=t.max_per_day) for t in teachers},
                rooms={r.id: RoomInfo(id=r.id, code=r.code, capacity=int(r.capacity), room_type=r.room_type) for r in rooms},
                subjects={
                    s.id: SubjectInfo(
                        id=s.id,
                        code=s.code,
                        weekly_frequency=int(s.weekly_frequency),
                        max_per_day=s.max_per_day,
                        room_type=s.room_type,
                    )
                    for s in subjects
                },
                classes={c.id: ClassInfo(id=c.id, code=c.code, size=int(c.size)) for c in classes},
                class_subjects=tuple(
                    ClassSubjectInfo(
                        class_id=a.class_id,
                        subject_id=a.subject_id,
                        teacher_ids=tuple(uuid.UUID(str(t)) for t in (a.teacher_ids or [])),
                        weekly_frequency=a.weekly_frequency,
                    )
                    for a in sorted(assignments, key=lambda a: (str(a.class_id), str(a.subject_id)))
                ),
                constraints=tuple(rules),
                preferences=preferences or Preferences(),
                excluded_slots=frozenset(excluded_slots),
                fixed=tuple(fixed),
                hints=dict(hints or {}),
            )

        return self._repo.run(_work)
