"""Penalty model shared by the solver, the conflict detector and the optimization analyzer.

Total penalty = HARD_WEIGHT * hard violations + sum(weight * amount) over soft
constraint violations + built-in preference terms (gaps, subject spread,
workload balance, room fit). Only the first two become stored conflicts.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Hashable, Iterable, Sequence

from solver.constraints import ConstraintRule
from solver.problem import Problem, Slot


HARD_WEIGHT = 10_000.0
PENALTY_SCALE = 100.0

GAP_WEIGHT = 1.0
SPREAD_WEIGHT = 2.0
BALANCE_WEIGHT = 0.25
ROOM_FIT_WEIGHT = 0.5

TEACHER_DOUBLE_BOOKING = "teacher_double_booking"
ROOM_CONFLICT = "room_conflict"
SUBJECT_CLASH = "subject_clash"
CONSTRAINT_VIOLATION = "constraint_violation"


def optimization_score(penalty: float) -> float:
    """Map a penalty onto (0, 100]; 100 means nothing to improve."""
    return round(100.0 / (1.0 + max(0.0, penalty) / PENALTY_SCALE), 2)


@dataclass(frozen=True)
class Placed:
    """An entry as the evaluator sees it; ``ref`` is whatever the caller uses to identify it."""

    ref: Hashable
    teacher_id: uuid.UUID
    subject_id: uuid.UUID
    class_id: uuid.UUID
    room_id: uuid.UUID
    day: int
    period: int
    occurrence: int = 0

    @property
    def slot(self) -> Slot:
        return Slot(self.day, self.period)


@dataclass
class Violation:
    type: str
    is_hard: bool
    refs: tuple[Hashable, ...]
    amount: float
    message: str
    weight: float = 0.0
    constraint_id: uuid.UUID | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def penalty(self) -> float:
        if self.is_hard:
            return HARD_WEIGHT * self.amount
        return self.weight * self.amount

    def identity(self) -> tuple[str, str | None, tuple[str, ...]]:
        return (self.type, str(self.constraint_id) if self.constraint_id else None, tuple(sorted(str(r) for r in self.refs)))


@dataclass
class Evaluation:
    violations: list[Violation]
    preference_penalty: float

    @property
    def hard_violations(self) -> list[Violation]:
        return [v for v in self.violations if v.is_hard]

    @property
    def hard_count(self) -> float:
        return sum(v.amount for v in self.violations if v.is_hard)

    @property
    def soft_penalty(self) -> float:
        return sum(v.penalty for v in self.violations if not v.is_hard)

    @property
    def penalty(self) -> float:
        return HARD_WEIGHT * self.hard_count + self.soft_penalty + self.preference_penalty

    @property
    def score(self) -> float:
        return optimization_score(self.penalty)


@dataclass(frozen=True)
class BucketItem:
    """One occupied period inside a (teacher, day) or (class, day) bucket."""

    ref: Hashable
    period: int
    subject_id: uuid.UUID
    occurrence: int


def _runs(positions: Sequence[int]) -> list[list[int]]:
    runs: list[list[int]] = []
    for pos in positions:
        if runs and pos == runs[-1][-1] + 1:
            runs[-1].append(pos)
        else:
            runs.append([pos])
    return runs


class RuleBook:
    """Indexes a problem's constraints for fast per-entry and per-bucket evaluation."""

    def __init__(self, problem: Problem):
        self.problem = problem
        self.grid = problem.grid
        self.prefs = problem.preferences
        self._day_positions = {
            d: {p: i for i, p in enumerate(problem.grid.periods_on(d))} for d in problem.grid.days
        }

        self.availability: dict[uuid.UUID, list[tuple[ConstraintRule, frozenset[Slot], frozenset[int]]]] = defaultdict(list)
        self.capacity_rules: list[ConstraintRule] = []
        self.class_consecutive: dict[uuid.UUID | None, list[ConstraintRule]] = defaultdict(list)
        self.teacher_consecutive: dict[uuid.UUID | None, list[ConstraintRule]] = defaultdict(list)
        freq_class: dict[tuple[uuid.UUID, uuid.UUID], ConstraintRule] = {}
        freq_subject: dict[uuid.UUID, ConstraintRule] = {}
        self.unevaluated: list[ConstraintRule] = []

        for rule in problem.constraints:
            p = rule.params
            if rule.kind == "TeacherAvailability":
                slots = frozenset(Slot(s.day, s.period) for s in p.unavailable_slots)
                self.availability[p.teacher_id].append((rule, slots, frozenset(p.days_off)))
            elif rule.kind == "RoomCapacity":
                self.capacity_rules.append(rule)
            elif rule.kind == "SubjectWeeklyFrequency":
                if p.class_id is not None:
                    freq_class.setdefault((p.class_id, p.subject_id), rule)
                else:
                    freq_subject.setdefault(p.subject_id, rule)
            elif rule.kind == "ConsecutivePeriodLimit":
                if p.teacher_id is not None:
                    self.teacher_consecutive[p.teacher_id].append(rule)
                elif p.class_id is not None:
                    self.class_consecutive[p.class_id].append(rule)
                else:
                    self.teacher_consecutive[None].append(rule)
                    self.class_consecutive[None].append(rule)
            else:
                self.unevaluated.append(rule)

        self._freq_class = freq_class
        self._freq_subject = freq_subject
        self.taken_subjects: dict[uuid.UUID, set[uuid.UUID]] = defaultdict(set)
        for cs in problem.class_subjects:
            self.taken_subjects[cs.class_id].add(cs.subject_id)

    # ------------------------
    # Rule lookups
    # ------------------------
    def frequency_rule(self, class_id: uuid.UUID, subject_id: uuid.UUID) -> ConstraintRule | None:
        rule = self._freq_class.get((class_id, subject_id))
        if rule is not None:
            return rule
        if subject_id in self.taken_subjects.get(class_id, ()):
            return self._freq_subject.get(subject_id)
        return None

    def max_per_day(self, class_id: uuid.UUID, subject_id: uuid.UUID) -> tuple[int | None, ConstraintRule | None]:
        rule = self.frequency_rule(class_id, subject_id)
        if rule is not None and rule.params.max_per_day is not None:
            return int(rule.params.max_per_day), rule
        subject = self.problem.subjects.get(subject_id)
        if subject is not None and subject.max_per_day is not None:
            return int(subject.max_per_day), None
        return None, None

    def capacity_limit(self, rule: ConstraintRule, room_id: uuid.UUID) -> int | None:
        p = rule.params
        if p.room_id is not None and p.room_id != room_id:
            return None
        room = self.problem.rooms.get(room_id)
        if room is None:
            return None
        return int(p.max_occupancy) if p.max_occupancy is not None else int(room.capacity)

    def is_teacher_available(self, teacher_id: uuid.UUID, slot: Slot, *, hard_only: bool = True) -> bool:
        for rule, slots, days_off in self.availability.get(teacher_id, ()):
            if hard_only and not rule.is_hard:
                continue
            if slot in slots or slot.day in days_off:
                return False
        return True

    def room_fits(self, room_id: uuid.UUID, class_size: int, room_type: str | None) -> bool:
        room = self.problem.rooms[room_id]
        if room_type is not None and room.room_type != room_type:
            return False
        if class_size > room.capacity:
            return False
        return True

    # ------------------------
    # Per-entry rules
    # ------------------------
    def unary(self, teacher_id: uuid.UUID, room_id: uuid.UUID, class_id: uuid.UUID, slot: Slot) -> list[tuple[ConstraintRule, float, str]]:
        """Availability and room-capacity violations caused by a single entry."""

        found: list[tuple[ConstraintRule, float, str]] = []
        for rule, slots, days_off in self.availability.get(teacher_id, ()):
            if slot in slots or slot.day in days_off:
                found.append((rule, 1.0, f"Teacher is unavailable on day {slot.day} period {slot.period}."))
        if self.capacity_rules:
            klass = self.problem.classes.get(class_id)
            size = int(klass.size) if klass is not None else 0
            for rule in self.capacity_rules:
                limit = self.capacity_limit(rule, room_id)
                if limit is not None and size > limit:
                    found.append((rule, 1.0, f"Class of {size} exceeds room capacity {limit}."))
        return found

    def unary_cost(self, teacher_id: uuid.UUID, room_id: uuid.UUID, class_id: uuid.UUID, slot: Slot) -> tuple[float, float]:
        hard = 0.0
        soft = 0.0
        for rule, amount, _msg in self.unary(teacher_id, room_id, class_id, slot):
            if rule.is_hard:
                hard += amount
            else:
                soft += rule.penalty_weight * amount
        return hard, soft + self.room_fit(room_id, class_id)

    def room_fit(self, room_id: uuid.UUID, class_id: uuid.UUID) -> float:
        if not self.prefs.prefer_room_fit:
            return 0.0
        room = self.problem.rooms.get(room_id)
        klass = self.problem.classes.get(class_id)
        if room is None or klass is None or room.capacity <= 0 or klass.size > room.capacity:
            return 0.0
        return ROOM_FIT_WEIGHT * (room.capacity - klass.size) / room.capacity

    # ------------------------
    # Bucket rules
    # ------------------------
    def _positions(self, day: int, periods: Iterable[int]) -> list[int]:
        index = self._day_positions.get(day, {})
        return sorted({index[p] for p in periods if p in index})

    def _gaps(self, day: int, periods: Iterable[int]) -> int:
        positions = self._positions(day, periods)
        if len(positions) < 2:
            return 0
        return (positions[-1] - positions[0] + 1) - len(positions)

    def _consecutive(
        self,
        rules: Iterable[ConstraintRule],
        day: int,
        items: Sequence[BucketItem],
        target: str,
    ) -> list[Violation]:
        rules = list(rules)
        if not rules:
            return []
        periods_on_day = self.grid.periods_on(day)
        refs_by_pos: dict[int, list[Hashable]] = defaultdict(list)
        index = self._day_positions.get(day, {})
        for it in items:
            if it.period in index:
                refs_by_pos[index[it.period]].append(it.ref)
        out: list[Violation] = []
        for run in _runs(sorted(refs_by_pos)):
            for rule in rules:
                limit = int(rule.params.max_consecutive)
                if len(run) <= limit:
                    continue
                refs = tuple(r for pos in run for r in refs_by_pos[pos])
                out.append(
                    Violation(
                        type=CONSTRAINT_VIOLATION,
                        is_hard=rule.is_hard,
                        refs=refs,
                        amount=float(len(run) - limit),
                        weight=rule.penalty_weight,
                        constraint_id=rule.id,
                        message=(
                            f"{target} teaches {len(run)} consecutive periods on day {day} "
                            f"(limit {limit}, from period {periods_on_day[run[0]]})."
                        ),
                        details={"day": day, "run_length": len(run), "limit": limit},
                    )
                )
        return out

    def class_day(self, class_id: uuid.UUID, day: int, items: Sequence[BucketItem]) -> tuple[list[Violation], float]:
        violations: list[Violation] = []
        preference = 0.0
        if not items:
            return violations, preference

        by_subject: dict[uuid.UUID, dict[int, list[Hashable]]] = defaultdict(lambda: defaultdict(list))
        for it in items:
            by_subject[it.subject_id][it.occurrence].append(it.ref)
        for subject_id in sorted(by_subject, key=str):
            occurrences = by_subject[subject_id]
            count = len(occurrences)
            limit, rule = self.max_per_day(class_id, subject_id)
            if limit is not None and count > limit:
                refs = tuple(r for occ in sorted(occurrences) for r in occurrences[occ])
                violations.append(
                    Violation(
                        type=CONSTRAINT_VIOLATION,
                        is_hard=True if rule is None else rule.is_hard,
                        refs=refs,
                        amount=float(count - limit),
                        weight=0.0 if rule is None else rule.penalty_weight,
                        constraint_id=None if rule is None else rule.id,
                        message=f"Subject scheduled {count} times on day {day} (max {limit}).",
                        details={"day": day, "subject_id": str(subject_id), "count": count, "limit": limit},
                    )
                )
            elif limit is None and self.prefs.spread_subjects and count > 1:
                preference += SPREAD_WEIGHT * (count - 1)

        rules = list(self.class_consecutive.get(class_id, ())) + list(self.class_consecutive.get(None, ()))
        violations.extend(self._consecutive(rules, day, items, "Class"))

        if self.prefs.minimize_gaps:
            preference += GAP_WEIGHT * self._gaps(day, (it.period for it in items))
        return violations, preference

    def teacher_day(self, teacher_id: uuid.UUID, day: int, items: Sequence[BucketItem]) -> tuple[list[Violation], float]:
        violations: list[Violation] = []
        preference = 0.0
        if not items:
            return violations, preference

        teacher = self.problem.teachers.get(teacher_id)
        load = len(items)
        if teacher is not None and teacher.max_per_day is not None and load > int(teacher.max_per_day):
            violations.append(
                Violation(
                    type=CONSTRAINT_VIOLATION,
                    is_hard=True,
                    refs=tuple(it.ref for it in items),
                    amount=float(load - int(teacher.max_per_day)),
                    message=f"Teacher has {load} periods on day {day} (max {teacher.max_per_day}).",
                    details={"day": day, "load": load, "limit": int(teacher.max_per_day)},
                )
            )

        rules = list(self.teacher_consecutive.get(teacher_id, ())) + list(self.teacher_consecutive.get(None, ()))
        violations.extend(self._consecutive(rules, day, items, "Teacher"))

        if self.prefs.minimize_gaps:
            preference += GAP_WEIGHT * self._gaps(day, (it.period for it in items))
        if self.prefs.balance_workload:
            preference += BALANCE_WEIGHT * load * load
        return violations, preference

    def balance_baseline(self, weekly_load: int) -> float:
        """Part of the workload term no placement can remove (perfectly even spread)."""
        if not self.prefs.balance_workload or weekly_load <= 0:
            return 0.0
        days = max(1, len(self.grid.days))
        return BALANCE_WEIGHT * weekly_load * weekly_load / days


def bucket_cost(violations: Iterable[Violation], preference: float) -> tuple[float, float]:
    hard = 0.0
    soft = preference
    for v in violations:
        if v.is_hard:
            hard += v.amount
        else:
            soft += v.weight * v.amount
    return hard, soft


def evaluate(book: RuleBook, placed: Sequence[Placed]) -> Evaluation:
    """Full evaluation of an assignment against built-in and stored rules."""

    violations: list[Violation] = []

    by_teacher_slot: dict[tuple[uuid.UUID, Slot], list[Placed]] = defaultdict(list)
    by_room_slot: dict[tuple[uuid.UUID, Slot], list[Placed]] = defaultdict(list)
    by_class_slot: dict[tuple[uuid.UUID, Slot], list[Placed]] = defaultdict(list)
    for p in placed:
        by_teacher_slot[(p.teacher_id, p.slot)].append(p)
        by_room_slot[(p.room_id, p.slot)].append(p)
        by_class_slot[(p.class_id, p.slot)].append(p)

    for (teacher_id, slot), group in sorted(by_teacher_slot.items(), key=lambda kv: (kv[0][1], str(kv[0][0]))):
        if len(group) > 1:
            violations.append(
                Violation(
                    type=TEACHER_DOUBLE_BOOKING,
                    is_hard=True,
                    refs=tuple(p.ref for p in group),
                    amount=float(len(group) - 1),
                    message=f"Teacher booked {len(group)} times on day {slot.day} period {slot.period}.",
                    details={"teacher_id": str(teacher_id), **slot.as_dict()},
                )
            )
    for (room_id, slot), group in sorted(by_room_slot.items(), key=lambda kv: (kv[0][1], str(kv[0][0]))):
        if len(group) > 1:
            violations.append(
                Violation(
                    type=ROOM_CONFLICT,
                    is_hard=True,
                    refs=tuple(p.ref for p in group),
                    amount=float(len(group) - 1),
                    message=f"Room booked {len(group)} times on day {slot.day} period {slot.period}.",
                    details={"room_id": str(room_id), **slot.as_dict()},
                )
            )
    for (class_id, slot), group in sorted(by_class_slot.items(), key=lambda kv: (kv[0][1], str(kv[0][0]))):
        lessons = {(p.subject_id, p.occurrence) for p in group}
        if len(lessons) > 1:
            violations.append(
                Violation(
                    type=SUBJECT_CLASH,
                    is_hard=True,
                    refs=tuple(p.ref for p in group),
                    amount=float(len(lessons) - 1),
                    message=f"Class has {len(lessons)} lessons on day {slot.day} period {slot.period}.",
                    details={"class_id": str(class_id), **slot.as_dict()},
                )
            )

    preference = 0.0
    for p in placed:
        for rule, amount, message in book.unary(p.teacher_id, p.room_id, p.class_id, p.slot):
            violations.append(
                Violation(
                    type=CONSTRAINT_VIOLATION,
                    is_hard=rule.is_hard,
                    refs=(p.ref,),
                    amount=amount,
                    weight=rule.penalty_weight,
                    constraint_id=rule.id,
                    message=message,
                    details={"kind": rule.kind, **p.slot.as_dict()},
                )
            )
        preference += book.room_fit(p.room_id, p.class_id)

    class_buckets: dict[tuple[uuid.UUID, int], list[BucketItem]] = defaultdict(list)
    teacher_buckets: dict[tuple[uuid.UUID, int], list[BucketItem]] = defaultdict(list)
    seen_lessons: set[tuple[uuid.UUID, int, uuid.UUID, int, int]] = set()
    teacher_load: dict[uuid.UUID, int] = defaultdict(int)
    for p in placed:
        item = BucketItem(ref=p.ref, period=p.period, subject_id=p.subject_id, occurrence=p.occurrence)
        # Joint lessons put several entries in one class slot; the class sees one lesson.
        lesson_at = (p.class_id, p.day, p.subject_id, p.occurrence, p.period)
        if lesson_at not in seen_lessons:
            seen_lessons.add(lesson_at)
            class_buckets[(p.class_id, p.day)].append(item)
        teacher_buckets[(p.teacher_id, p.day)].append(item)
        teacher_load[p.teacher_id] += 1

    for (class_id, day) in sorted(class_buckets, key=lambda k: (str(k[0]), k[1])):
        found, pref = book.class_day(class_id, day, class_buckets[(class_id, day)])
        violations.extend(found)
        preference += pref
    for (teacher_id, day) in sorted(teacher_buckets, key=lambda k: (str(k[0]), k[1])):
        found, pref = book.teacher_day(teacher_id, day, teacher_buckets[(teacher_id, day)])
        violations.extend(found)
        preference += pref
    for teacher_id, load in teacher_load.items():
        preference -= book.balance_baseline(load)

    violations.extend(_weekly_frequency(book, placed))
    return Evaluation(violations=violations, preference_penalty=max(0.0, preference))


def _weekly_frequency(book: RuleBook, placed: Sequence[Placed]) -> list[Violation]:
    out: list[Violation] = []
    occurrences: dict[tuple[uuid.UUID, uuid.UUID], dict[int, list[Hashable]]] = defaultdict(lambda: defaultdict(list))
    for p in placed:
        occurrences[(p.class_id, p.subject_id)][p.occurrence].append(p.ref)

    pairs = set(occurrences)
    for cs in book.problem.class_subjects:
        pairs.add((cs.class_id, cs.subject_id))
    for rule in book.problem.constraints:
        if rule.kind == "SubjectWeeklyFrequency" and rule.params.class_id is not None:
            pairs.add((rule.params.class_id, rule.params.subject_id))

    for class_id, subject_id in sorted(pairs, key=lambda k: (str(k[0]), str(k[1]))):
        rule = book.frequency_rule(class_id, subject_id)
        if rule is None:
            continue
        target = int(rule.params.periods_per_week)
        got = occurrences.get((class_id, subject_id), {})
        count = len(got)
        if count == target:
            continue
        refs = tuple(r for occ in sorted(got) for r in got[occ])
        direction = "short" if count < target else "over"
        out.append(
            Violation(
                type=CONSTRAINT_VIOLATION,
                is_hard=rule.is_hard,
                refs=refs,
                amount=float(abs(target - count)),
                weight=rule.penalty_weight,
                constraint_id=rule.id,
                message=f"Subject has {count} of {target} weekly periods ({direction} by {abs(target - count)}).",
                details={"class_id": str(class_id), "subject_id": str(subject_id), "count": count, "target": target},
            )
        )
    return out
