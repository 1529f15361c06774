from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from core.database import run_with_retry
from core.errors import NotFoundError
from models import ScheduleEntry


T = TypeVar("T")


@dataclass(frozen=True)
class Scope:
    """(school, academic year, term): the unit generation is serialized on."""

    school_id: uuid.UUID
    academic_year_id: uuid.UUID
    term_id: uuid.UUID

    def as_dict(self) -> dict[str, str]:
        return {
            "school_id": str(self.school_id),
            "academic_year_id": str(self.academic_year_id),
            "term_id": str(self.term_id),
        }


class Repository:
    """Persistence boundary: every unit of work runs in its own retried transaction."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def run(self, work: Callable[[Session], T]) -> T:
        return run_with_retry(self._session_factory, work)


def get_or_404(db: Session, model: type, obj_id: uuid.UUID, code: str, *, for_update: bool = False) -> Any:
    if for_update:
        obj = db.execute(select(model).where(model.id == obj_id).with_for_update()).scalar_one_or_none()
    else:
        obj = db.get(model, obj_id)
    if obj is None:
        raise NotFoundError(code, details={"id": str(obj_id)})
    return obj


def load_entries(db: Session, version_id: uuid.UUID) -> list[ScheduleEntry]:
    q = (
        select(ScheduleEntry)
        .where(ScheduleEntry.version_id == version_id)
        .order_by(ScheduleEntry.position.asc(), ScheduleEntry.id.asc())
    )
    return list(db.execute(q).scalars().all())


def entry_snapshot(entry: ScheduleEntry) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "teacher_id": str(entry.teacher_id),
        "subject_id": str(entry.subject_id),
        "class_id": str(entry.class_id),
        "room_id": str(entry.room_id),
        "day": int(entry.day_of_week),
        "period": int(entry.period),
        "occurrence": int(entry.occurrence),
    }
