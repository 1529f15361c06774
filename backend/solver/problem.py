from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from core.errors import ValidationError
from solver.constraints import ConstraintRule, referenced_ids


@dataclass(frozen=True, order=True)
class Slot:
    day: int
    period: int

    def as_dict(self) -> dict[str, int]:
        return {"day": self.day, "period": self.period}


class TimeGrid:
    """Ordered, immutable set of teaching slots (day-major, then period)."""

    __slots__ = ("slots", "_index", "_by_day")

    def __init__(self, slots: Iterable[Slot]):
        ordered = tuple(sorted(set(slots)))
        self.slots: tuple[Slot, ...] = ordered
        self._index = {s: i for i, s in enumerate(ordered)}
        by_day: dict[int, list[int]] = defaultdict(list)
        for s in ordered:
            by_day[s.day].append(s.period)
        self._by_day = {d: tuple(p) for d, p in by_day.items()}

    def __len__(self) -> int:
        return len(self.slots)

    def __contains__(self, slot: object) -> bool:
        return slot in self._index

    def index_of(self, slot: Slot) -> int:
        return self._index[slot]

    @property
    def days(self) -> tuple[int, ...]:
        return tuple(sorted(self._by_day))

    def periods_on(self, day: int) -> tuple[int, ...]:
        return self._by_day.get(day, ())


@dataclass(frozen=True)
class TeacherInfo:
    id: uuid.UUID
    code: str
    max_per_day: int | None = None


@dataclass(frozen=True)
class RoomInfo:
    id: uuid.UUID
    code: str
    capacity: int
    room_type: str = "classroom"


@dataclass(frozen=True)
class SubjectInfo:
    id: uuid.UUID
    code: str
    weekly_frequency: int
    max_per_day: int | None = None
    room_type: str | None = None


@dataclass(frozen=True)
class ClassInfo:
    id: uuid.UUID
    code: str
    size: int = 0


@dataclass(frozen=True)
class ClassSubjectInfo:
    class_id: uuid.UUID
    subject_id: uuid.UUID
    teacher_ids: tuple[uuid.UUID, ...]
    weekly_frequency: int | None = None


@dataclass(frozen=True)
class Preferences:
    balance_workload: bool = True
    minimize_gaps: bool = True
    spread_subjects: bool = True
    prefer_room_fit: bool = True


@dataclass(frozen=True)
class Entry:
    """One (teacher, subject, class, room, slot) assignment."""

    teacher_id: uuid.UUID
    subject_id: uuid.UUID
    class_id: uuid.UUID
    room_id: uuid.UUID
    slot: Slot
    occurrence: int = 0

    def lesson_key(self) -> tuple[uuid.UUID, uuid.UUID, int]:
        return (self.class_id, self.subject_id, self.occurrence)

    def as_dict(self) -> dict[str, object]:
        return {
            "teacher_id": str(self.teacher_id),
            "subject_id": str(self.subject_id),
            "class_id": str(self.class_id),
            "room_id": str(self.room_id),
            "day": self.slot.day,
            "period": self.slot.period,
            "occurrence": self.occurrence,
        }


@dataclass(frozen=True)
class FixedPlacement:
    class_id: uuid.UUID
    subject_id: uuid.UUID
    occurrence: int
    teacher_id: uuid.UUID
    slot: Slot
    room_id: uuid.UUID


HintKey = tuple[uuid.UUID, uuid.UUID, int]


@dataclass(frozen=True)
class Problem:
    grid: TimeGrid
    teachers: Mapping[uuid.UUID, TeacherInfo]
    rooms: Mapping[uuid.UUID, RoomInfo]
    subjects: Mapping[uuid.UUID, SubjectInfo]
    classes: Mapping[uuid.UUID, ClassInfo]
    class_subjects: tuple[ClassSubjectInfo, ...]
    constraints: tuple[ConstraintRule, ...] = ()
    preferences: Preferences = field(default_factory=Preferences)
    excluded_slots: frozenset[Slot] = frozenset()
    fixed: tuple[FixedPlacement, ...] = ()
    # (class_id, subject_id, occurrence) -> preferred slot, from saved optimization picks.
    hints: Mapping[HintKey, Slot] = field(default_factory=dict)


@dataclass(frozen=True)
class Lesson:
    """One weekly occurrence of a class-subject; joint lessons carry several teachers."""

    index: int
    class_id: uuid.UUID
    subject_id: uuid.UUID
    occurrence: int
    teacher_ids: tuple[uuid.UUID, ...]
    size: int
    room_type: str | None

    @property
    def key(self) -> HintKey:
        return (self.class_id, self.subject_id, self.occurrence)


def weekly_target(problem: Problem, class_id: uuid.UUID, subject_id: uuid.UUID, default: int) -> int:
    """Frequency target: class-specific rule, then subject-wide rule, then the configured default."""
    subject_wide: int | None = None
    for rule in problem.constraints:
        if rule.kind != "SubjectWeeklyFrequency" or rule.params.subject_id != subject_id:
            continue
        if rule.params.class_id == class_id:
            return int(rule.params.periods_per_week)
        if rule.params.class_id is None and subject_wide is None:
            subject_wide = int(rule.params.periods_per_week)
    return default if subject_wide is None else subject_wide


def build_lessons(problem: Problem) -> list[Lesson]:
    lessons: list[Lesson] = []
    ordered = sorted(
        problem.class_subjects,
        key=lambda cs: (problem.classes[cs.class_id].code, problem.subjects[cs.subject_id].code, str(cs.class_id), str(cs.subject_id)),
    )
    for cs in ordered:
        subject = problem.subjects[cs.subject_id]
        default = cs.weekly_frequency if cs.weekly_frequency is not None else subject.weekly_frequency
        target = weekly_target(problem, cs.class_id, cs.subject_id, int(default))
        teacher_ids = tuple(sorted(cs.teacher_ids, key=str))
        for occurrence in range(target):
            lessons.append(
                Lesson(
                    index=len(lessons),
                    class_id=cs.class_id,
                    subject_id=cs.subject_id,
                    occurrence=occurrence,
                    teacher_ids=teacher_ids,
                    size=int(problem.classes[cs.class_id].size),
                    room_type=subject.room_type,
                )
            )
    return lessons


def validate_problem(problem: Problem) -> None:
    """Reject malformed input before any search starts."""

    errors: list[str] = []
    if len(problem.grid) == 0:
        errors.append("time grid is empty")
    if not problem.rooms:
        errors.append("no active rooms")

    seen_pairs: set[tuple[uuid.UUID, uuid.UUID]] = set()
    for cs in problem.class_subjects:
        if cs.class_id not in problem.classes:
            errors.append(f"class-subject references unknown class {cs.class_id}")
        if cs.subject_id not in problem.subjects:
            errors.append(f"class-subject references unknown subject {cs.subject_id}")
        else:
            frequency = cs.weekly_frequency
            if frequency is None:
                frequency = problem.subjects[cs.subject_id].weekly_frequency
            if int(frequency) <= 0:
                errors.append(f"class {cs.class_id} subject {cs.subject_id} has weekly frequency {frequency}")
        if not cs.teacher_ids:
            errors.append(f"class {cs.class_id} subject {cs.subject_id} has no teacher")
        if len(set(cs.teacher_ids)) != len(cs.teacher_ids):
            errors.append(f"class {cs.class_id} subject {cs.subject_id} lists a teacher twice")
        for tid in cs.teacher_ids:
            if tid not in problem.teachers:
                errors.append(f"class-subject references unknown teacher {tid}")
        if (cs.class_id, cs.subject_id) in seen_pairs:
            errors.append(f"class {cs.class_id} takes subject {cs.subject_id} twice")
        seen_pairs.add((cs.class_id, cs.subject_id))

    registries = {
        "teacher": problem.teachers,
        "room": problem.rooms,
        "subject": problem.subjects,
        "class": problem.classes,
    }
    for rule in problem.constraints:
        for entity, ref in referenced_ids(rule.params).items():
            if ref not in registries[entity]:
                errors.append(f"constraint {rule.id} references unknown {entity} {ref}")

    for fx in problem.fixed:
        if fx.slot not in problem.grid:
            errors.append(f"fixed placement uses slot {fx.slot.day}/{fx.slot.period} outside the grid")
        if fx.room_id not in problem.rooms:
            errors.append(f"fixed placement references unknown room {fx.room_id}")

    if errors:
        raise ValidationError("invalid_problem", "Scheduling input is malformed.", details={"errors": errors})
