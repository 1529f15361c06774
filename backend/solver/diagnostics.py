from __future__ import annotations

from collections import defaultdict
from enum import Enum
from typing import Any

from solver.problem import Lesson, Problem, Slot


class DiagnosticType(str, Enum):
    TEACHER_LOAD_EXCEEDS_AVAILABILITY = "TEACHER_LOAD_EXCEEDS_AVAILABILITY"
    TEACHER_DAILY_LOAD_VIOLATION = "TEACHER_DAILY_LOAD_VIOLATION"
    CLASS_SLOT_DEFICIT = "CLASS_SLOT_DEFICIT"
    SUBJECT_DAILY_CAP_DEFICIT = "SUBJECT_DAILY_CAP_DEFICIT"
    ROOM_CAPACITY_SHORTAGE = "ROOM_CAPACITY_SHORTAGE"
    JOINT_LESSON_ROOM_SHORTAGE = "JOINT_LESSON_ROOM_SHORTAGE"
    NO_FITTING_ROOM = "NO_FITTING_ROOM"
    DIAGNOSTICS_INCONCLUSIVE = "DIAGNOSTICS_INCONCLUSIVE"


def summarize_diagnostics(diagnostics: list[dict[str, Any]]) -> str:
    n = len(diagnostics)
    if n <= 0:
        return "No blocking conflicts detected by diagnostics checks."
    if n == 1:
        return "1 blocking conflict detected."
    return f"{n} blocking conflicts detected."


def _diag(*, dtype: DiagnosticType, explanation: str, **payload: Any) -> dict[str, Any]:
    return {"type": dtype.value, **payload, "explanation": explanation}


def run_infeasibility_analysis(problem: Problem, lessons: list[Lesson]) -> list[dict[str, Any]]:
    """Pre-solve counting checks that prove some hard rule cannot be met.

    Best effort: an empty result does not mean the input is feasible.
    """

    diagnostics: list[dict[str, Any]] = []
    grid = problem.grid
    usable = [s for s in grid.slots if s not in problem.excluded_slots] or list(grid.slots)
    days = sorted({s.day for s in usable})

    # ------------------------
    # A) Teacher weekly load vs availability
    # ------------------------
    blocked: dict[Any, set[Slot]] = defaultdict(set)
    for rule in problem.constraints:
        if rule.kind != "TeacherAvailability" or not rule.is_hard:
            continue
        p = rule.params
        for s in usable:
            if s.day in p.days_off or any(u.day == s.day and u.period == s.period for u in p.unavailable_slots):
                blocked[p.teacher_id].add(s)

    teacher_load: dict[Any, int] = defaultdict(int)
    for lesson in lessons:
        for tid in lesson.teacher_ids:
            teacher_load[tid] += 1

    for tid in sorted(teacher_load, key=str):
        teacher = problem.teachers.get(tid)
        load = teacher_load[tid]
        free = len(usable) - len(blocked.get(tid, ()))
        if load > free:
            diagnostics.append(
                _diag(
                    dtype=DiagnosticType.TEACHER_LOAD_EXCEEDS_AVAILABILITY,
                    teacher_id=str(tid),
                    teacher=getattr(teacher, "code", None),
                    required_slots=int(load),
                    available_slots=int(free),
                    explanation=(
                        f"Teacher {getattr(teacher, 'code', tid)} needs {int(load)} periods per week "
                        f"but is available for only {int(free)}."
                    ),
                )
            )
        if teacher is not None and teacher.max_per_day is not None:
            capacity = int(teacher.max_per_day) * len(days)
            if load > capacity:
                diagnostics.append(
                    _diag(
                        dtype=DiagnosticType.TEACHER_DAILY_LOAD_VIOLATION,
                        teacher_id=str(tid),
                        teacher=teacher.code,
                        required_slots=int(load),
                        max_per_day=int(teacher.max_per_day),
                        days=len(days),
                        explanation=(
                            f"Teacher {teacher.code} needs {int(load)} periods but max_per_day={int(teacher.max_per_day)} "
                            f"over {len(days)} days allows only {capacity}."
                        ),
                    )
                )

    # ------------------------
    # B) Class slot deficit
    # ------------------------
    class_load: dict[Any, int] = defaultdict(int)
    subject_load: dict[tuple[Any, Any], int] = defaultdict(int)
    for lesson in lessons:
        class_load[lesson.class_id] += 1
        subject_load[(lesson.class_id, lesson.subject_id)] += 1

    for cid in sorted(class_load, key=str):
        klass = problem.classes.get(cid)
        if class_load[cid] > len(usable):
            diagnostics.append(
                _diag(
                    dtype=DiagnosticType.CLASS_SLOT_DEFICIT,
                    class_id=str(cid),
                    class_code=getattr(klass, "code", None),
                    required_slots=int(class_load[cid]),
                    available_slots=len(usable),
                    explanation=(
                        f"Class {getattr(klass, 'code', cid)} needs {int(class_load[cid])} periods "
                        f"but the grid offers {len(usable)}."
                    ),
                )
            )

    # ------------------------
    # C) Subject daily cap
    # ------------------------
    for (cid, sid), count in sorted(subject_load.items(), key=lambda kv: (str(kv[0][0]), str(kv[0][1]))):
        subject = problem.subjects.get(sid)
        cap = getattr(subject, "max_per_day", None)
        for rule in problem.constraints:
            if rule.kind != "SubjectWeeklyFrequency" or rule.params.subject_id != sid:
                continue
            if rule.params.class_id in (None, cid) and rule.params.max_per_day is not None and rule.is_hard:
                cap = int(rule.params.max_per_day)
                if rule.params.class_id == cid:
                    break
        if cap is None:
            continue
        if count > int(cap) * len(days):
            diagnostics.append(
                _diag(
                    dtype=DiagnosticType.SUBJECT_DAILY_CAP_DEFICIT,
                    class_id=str(cid),
                    subject_id=str(sid),
                    subject=getattr(subject, "code", None),
                    required_sessions=int(count),
                    max_per_day=int(cap),
                    explanation=(
                        f"Subject {getattr(subject, 'code', sid)} needs {int(count)} sessions "
                        f"but max_per_day={int(cap)} over {len(days)} days allows only {int(cap) * len(days)}."
                    ),
                )
            )

    # ------------------------
    # D) Rooms
    # ------------------------
    room_count = len(problem.rooms)
    demand = sum(len(lesson.teacher_ids) for lesson in lessons)
    if demand > room_count * len(usable):
        diagnostics.append(
            _diag(
                dtype=DiagnosticType.ROOM_CAPACITY_SHORTAGE,
                required_room_slots=int(demand),
                available_room_slots=int(room_count * len(usable)),
                explanation=(
                    f"Lessons need {int(demand)} room-periods but {room_count} rooms over "
                    f"{len(usable)} periods provide {room_count * len(usable)}."
                ),
            )
        )

    seen_joint: set[tuple[Any, Any]] = set()
    for lesson in lessons:
        if len(lesson.teacher_ids) <= room_count:
            continue
        key = (lesson.class_id, lesson.subject_id)
        if key in seen_joint:
            continue
        seen_joint.add(key)
        subject = problem.subjects.get(lesson.subject_id)
        diagnostics.append(
            _diag(
                dtype=DiagnosticType.JOINT_LESSON_ROOM_SHORTAGE,
                class_id=str(lesson.class_id),
                subject_id=str(lesson.subject_id),
                subject=getattr(subject, "code", None),
                teachers=len(lesson.teacher_ids),
                available_rooms=room_count,
                explanation=(
                    f"Joint lesson {getattr(subject, 'code', lesson.subject_id)} puts {len(lesson.teacher_ids)} teachers "
                    f"in one period but only {room_count} rooms exist."
                ),
            )
        )

    has_capacity_rule = any(r.kind == "RoomCapacity" and r.is_hard for r in problem.constraints)
    if has_capacity_rule:
        largest = max((r.capacity for r in problem.rooms.values()), default=0)
        for cid in sorted(class_load, key=str):
            klass = problem.classes.get(cid)
            if klass is not None and klass.size > largest:
                diagnostics.append(
                    _diag(
                        dtype=DiagnosticType.NO_FITTING_ROOM,
                        class_id=str(cid),
                        class_code=klass.code,
                        class_size=int(klass.size),
                        largest_room=int(largest),
                        explanation=f"Class {klass.code} has {int(klass.size)} students; the largest room seats {int(largest)}.",
                    )
                )

    return diagnostics


def inconclusive(unsatisfied: int) -> dict[str, Any]:
    return _diag(
        dtype=DiagnosticType.DIAGNOSTICS_INCONCLUSIVE,
        unsatisfied=int(unsatisfied),
        explanation=(
            f"Search ended with {int(unsatisfied)} unsatisfied hard constraints that no counting check explains; "
            "try a larger time budget or relax availability."
        ),
    )

