from __future__ import annotations

import threading
import uuid
from collections import Counter

import pytest

from core.errors import ValidationError
from solver.constraints import ConstraintRule, parse_parameters
from solver.engine import SolveOptions, solve
from solver.evaluation import ROOM_CONFLICT, optimization_score
from solver.problem import (
    ClassInfo,
    ClassSubjectInfo,
    FixedPlacement,
    Problem,
    RoomInfo,
    Slot,
    SubjectInfo,
    TeacherInfo,
    TimeGrid,
)


def _id(n: int) -> uuid.UUID:
    return uuid.UUID(int=n)


def school_problem(*, constraints=(), fixed=(), days=5, periods=4) -> Problem:
    teachers = {_id(i): TeacherInfo(id=_id(i), code=f"T{i}") for i in (1, 2, 3)}
    rooms = {_id(i): RoomInfo(id=_id(i), code=f"R{i}", capacity=30) for i in (11, 12)}
    subjects = {
        _id(21): SubjectInfo(id=_id(21), code="MATH", weekly_frequency=3),
        _id(22): SubjectInfo(id=_id(22), code="ENG", weekly_frequency=2),
        _id(23): SubjectInfo(id=_id(23), code="SCI", weekly_frequency=2),
    }
    classes = {_id(i): ClassInfo(id=_id(i), code=f"C{i}", size=25) for i in (31, 32)}
    class_subjects = tuple(
        ClassSubjectInfo(class_id=c, subject_id=s, teacher_ids=(t,))
        for c in classes
        for s, t in zip(subjects, teachers)
    )
    return Problem(
        grid=TimeGrid(Slot(d, p) for d in range(days) for p in range(periods)),
        teachers=teachers,
        rooms=rooms,
        subjects=subjects,
        classes=classes,
        class_subjects=class_subjects,
        constraints=tuple(constraints),
        fixed=tuple(fixed),
    )


OPTIONS = SolveOptions(seed=7, time_budget_seconds=60.0, max_iterations=300)


def test_same_seed_gives_identical_entries():
    problem = school_problem()
    first = solve(problem, OPTIONS)
    second = solve(problem, OPTIONS)

    assert first.entries == second.entries
    assert first.optimization_score == second.optimization_score


def test_feasible_result_has_no_double_booking():
    result = solve(school_problem(), OPTIONS)

    assert result.is_feasible
    assert len(result.entries) == 14
    teacher_slots = Counter((e.teacher_id, e.slot) for e in result.entries)
    room_slots = Counter((e.room_id, e.slot) for e in result.entries)
    class_slots = Counter((e.class_id, e.slot) for e in result.entries)
    assert max(teacher_slots.values()) == 1
    assert max(room_slots.values()) == 1
    assert max(class_slots.values()) == 1


def test_entries_are_ordered_by_slot():
    problem = school_problem()
    result = solve(problem, OPTIONS)
    positions = [problem.grid.index_of(e.slot) for e in result.entries]
    assert positions == sorted(positions)


def test_joint_lesson_without_second_room_reports_room_conflict():
    t1, t2, room, subject, klass = _id(1), _id(2), _id(11), _id(21), _id(31)
    problem = Problem(
        grid=TimeGrid(Slot(0, p) for p in range(3)),
        teachers={t1: TeacherInfo(id=t1, code="T1"), t2: TeacherInfo(id=t2, code="T2")},
        rooms={room: RoomInfo(id=room, code="R1", capacity=1)},
        subjects={subject: SubjectInfo(id=subject, code="LAB", weekly_frequency=1)},
        classes={klass: ClassInfo(id=klass, code="C1", size=1)},
        class_subjects=(ClassSubjectInfo(class_id=klass, subject_id=subject, teacher_ids=(t1, t2)),),
    )

    result = solve(problem, OPTIONS)

    assert len(result.entries) == 2
    assert result.entries[0].slot == result.entries[1].slot
    assert len(result.unsatisfied_hard_constraints) >= 1
    room_conflicts = [u for u in result.unsatisfied_hard_constraints if u["type"] == ROOM_CONFLICT]
    assert len(room_conflicts) == 1
    assert room_conflicts[0]["entry_positions"] == [0, 1]


def test_hard_availability_is_respected():
    rule = ConstraintRule(
        id=_id(99),
        scope="teacher",
        kind="TeacherAvailability",
        is_hard=True,
        weight=None,
        params=parse_parameters("TeacherAvailability", {"teacher_id": str(_id(1)), "days_off": [0, 1]}),
    )
    result = solve(school_problem(constraints=[rule]), OPTIONS)

    assert result.is_feasible
    assert all(e.slot.day not in (0, 1) for e in result.entries if e.teacher_id == _id(1))


def test_fixed_placements_stay_put():
    pin = FixedPlacement(
        class_id=_id(31),
        subject_id=_id(21),
        occurrence=0,
        teacher_id=_id(1),
        slot=Slot(4, 3),
        room_id=_id(12),
    )
    result = solve(school_problem(fixed=[pin]), OPTIONS)

    pinned = [e for e in result.entries if e.lesson_key() == (_id(31), _id(21), 0)]
    assert len(pinned) == 1
    assert pinned[0].slot == Slot(4, 3)
    assert pinned[0].room_id == _id(12)


def test_overfull_week_is_reported_not_raised():
    # 14 lessons into 4 slots: the result carries the clashes instead of failing.
    result = solve(school_problem(days=1), OPTIONS)

    assert not result.is_feasible
    assert len(result.entries) == 14
    assert result.stats["diagnostics"]
    assert result.optimization_score < 100


def test_cancelled_before_start():
    flag = threading.Event()
    flag.set()
    result = solve(school_problem(), OPTIONS, cancel_event=flag)
    assert result.cancelled


def test_progress_is_reported():
    seen: list[float] = []
    solve(school_problem(), OPTIONS, progress=seen.append)
    assert seen
    assert all(0.0 <= v <= 1.0 for v in seen)


def test_malformed_input_raises():
    problem = school_problem()
    empty = Problem(
        grid=TimeGrid([]),
        teachers=problem.teachers,
        rooms=problem.rooms,
        subjects=problem.subjects,
        classes=problem.classes,
        class_subjects=problem.class_subjects,
    )
    with pytest.raises(ValidationError) as exc:
        solve(empty, OPTIONS)
    assert exc.value.code == "invalid_problem"


def test_zero_weekly_frequency_is_rejected():
    problem = school_problem()
    first = problem.class_subjects[0]
    overridden = (
        ClassSubjectInfo(class_id=first.class_id, subject_id=first.subject_id, teacher_ids=first.teacher_ids, weekly_frequency=0),
    ) + problem.class_subjects[1:]
    broken = Problem(
        grid=problem.grid,
        teachers=problem.teachers,
        rooms=problem.rooms,
        subjects=problem.subjects,
        classes=problem.classes,
        class_subjects=overridden,
    )

    with pytest.raises(ValidationError) as exc:
        solve(broken, OPTIONS)

    assert exc.value.code == "invalid_problem"
    assert any("weekly frequency 0" in e for e in exc.value.details["errors"])


def test_score_mapping():
    assert optimization_score(0) == 100.0
    assert optimization_score(100) == 50.0
    assert optimization_score(-5) == 100.0


def _large_problem(n_classes: int = 120) -> Problem:
    teachers = {_id(1000 + i): TeacherInfo(id=_id(1000 + i), code=f"T{i:03d}") for i in range(60)}
    rooms = {_id(2000 + i): RoomInfo(id=_id(2000 + i), code=f"R{i:03d}", capacity=40) for i in range(80)}
    subjects = {
        _id(3000 + i): SubjectInfo(id=_id(3000 + i), code=f"S{i}", weekly_frequency=4) for i in range(5)
    }
    classes = {_id(4000 + i): ClassInfo(id=_id(4000 + i), code=f"C{i:03d}", size=30) for i in range(n_classes)}
    teacher_ids = list(teachers)
    class_subjects = tuple(
        ClassSubjectInfo(class_id=c, subject_id=s, teacher_ids=(teacher_ids[(ci * 5 + si) % len(teacher_ids)],))
        for ci, c in enumerate(classes)
        for si, s in enumerate(subjects)
    )
    return Problem(
        grid=TimeGrid(Slot(d, p) for d in range(5) for p in range(8)),
        teachers=teachers,
        rooms=rooms,
        subjects=subjects,
        classes=classes,
        class_subjects=class_subjects,
    )


def test_time_budget_bounds_construction_too():
    problem = _large_problem()

    result = solve(problem, SolveOptions(seed=1, time_budget_seconds=0.1, max_iterations=10_000))

    assert result.stats["lessons"] == 2400
    # Every lesson is still placed when the budget runs out mid-construction.
    assert len(result.entries) == 2400
    assert result.stats["elapsed_seconds"] < 0.1 + 1.0
    if result.stats["rushed_placements"]:
        assert result.stats["stop_reason"] == "time_budget"
