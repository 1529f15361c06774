from __future__ import annotations

import time
import uuid
from types import SimpleNamespace

import pytest

from core.database import create_db_engine
from services.container import Services
from services.repository import Scope
from solver.engine import solve
from solver.problem import Entry, Slot


DAYS = 5
PERIODS = 4


@pytest.fixture()
def make_services(tmp_path):
    """Factory for a started service container on a throwaway SQLite file."""

    created: list[Services] = []

    def _make(*, workers: int = 1, solve_fn=solve) -> Services:
        engine = create_db_engine(f"sqlite:///{tmp_path / f'timetable-{len(created)}.db'}")
        svc = Services(engine, workers=workers, solve_fn=solve_fn)
        svc.start()
        created.append(svc)
        return svc

    yield _make
    for svc in created:
        svc.shutdown(drain=False)


@pytest.fixture()
def services(make_services) -> Services:
    return make_services()


@pytest.fixture()
def scope() -> Scope:
    return Scope(uuid.uuid4(), uuid.uuid4(), uuid.uuid4())


def seed_school(services: Services, scope: Scope) -> SimpleNamespace:
    """Two classes, three teachers, two rooms, three subjects on a 5x4 grid."""

    ref = services.reference
    sid = scope.school_id
    ref.create_time_grid(scope, [{"day": d, "period": p} for d in range(DAYS) for p in range(PERIODS)])
    teachers = [ref.create_teacher(sid, {"code": f"T{i}", "full_name": f"Teacher {i}"}) for i in range(3)]
    rooms = [ref.create_room(sid, {"code": f"R{i}", "name": f"Room {i}", "capacity": 30}) for i in range(2)]
    subjects = [
        ref.create_subject(sid, {"code": code, "name": name, "weekly_frequency": freq})
        for code, name, freq in (("MATH", "Mathematics", 3), ("ENG", "English", 2), ("SCI", "Science", 2))
    ]
    classes = [
        ref.create_class(sid, {"code": code, "name": f"Grade {code}", "academic_year_id": scope.academic_year_id, "size": 25})
        for code in ("7A", "7B")
    ]
    for klass in classes:
        for subject, teacher in zip(subjects, teachers):
            ref.assign_subject(sid, class_id=klass.id, subject_id=subject.id, teacher_ids=[teacher.id])
    return SimpleNamespace(scope=scope, teachers=teachers, rooms=rooms, subjects=subjects, classes=classes)


@pytest.fixture()
def school(services, scope) -> SimpleNamespace:
    return seed_school(services, scope)


def entry(school, *, klass: int, subject: int, teacher: int, room: int, day: int, period: int, occurrence: int = 0) -> Entry:
    return Entry(
        teacher_id=school.teachers[teacher].id,
        subject_id=school.subjects[subject].id,
        class_id=school.classes[klass].id,
        room_id=school.rooms[room].id,
        slot=Slot(day, period),
        occurrence=occurrence,
    )


def wait_for_job(services: Services, job_id, *, timeout: float = 60.0):
    deadline = time.monotonic() + timeout
    while True:
        job = services.orchestrator.get_status(job_id)
        if job.is_terminal:
            return job
        if time.monotonic() > deadline:
            raise AssertionError(f"job {job_id} still {job.state} after {timeout}s")
        time.sleep(0.05)


class EventLog:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def __call__(self, name: str, payload: dict) -> None:
        self.events.append((name, payload))

    def named(self, name: str) -> list[dict]:
        return [p for n, p in self.events if n == name]


@pytest.fixture()
def events(services) -> EventLog:
    log = EventLog()
    services.events.subscribe("*", log)
    return log
