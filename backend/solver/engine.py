from __future__ import annotations

import logging
import math
import random
import threading
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

from solver.diagnostics import inconclusive, run_infeasibility_analysis, summarize_diagnostics
from solver.evaluation import (
    HARD_WEIGHT,
    BucketItem,
    Placed,
    RuleBook,
    bucket_cost,
    evaluate,
)
from solver.problem import Entry, Lesson, Problem, Slot, build_lessons, validate_problem


logger = logging.getLogger(__name__)

HINT_BONUS = 0.5
MIN_TEMPERATURE = 0.01

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class SolveOptions:
    seed: int = 0
    time_budget_seconds: float = 20.0
    max_iterations: int = 5000
    stall_limit: int = 500
    initial_temperature: float = 2.0
    cooling: float = 0.995


@dataclass
class SolveResult:
    entries: list[Entry]
    unsatisfied_hard_constraints: list[dict[str, Any]]
    optimization_score: float
    penalty: float
    iterations: int
    cancelled: bool
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def is_feasible(self) -> bool:
        return not self.unsatisfied_hard_constraints


class _Search:
    """Mutable assignment with incremental cost bookkeeping.

    Costs are marginal: ``placement_cost`` prices a lesson against everything
    else currently placed, so summing the values returned by successive adds
    reproduces the full evaluation (minus terms no placement can change).
    """

    def __init__(self, problem: Problem, lessons: list[Lesson]):
        self.problem = problem
        self.book = RuleBook(problem)
        self.lessons = lessons
        self.slots: tuple[Slot, ...] = problem.grid.slots
        n = len(lessons)

        self.assign: list[int | None] = [None] * n
        self.rooms: list[tuple[uuid.UUID, ...]] = [()] * n
        self.pinned: list[bool] = [False] * n

        self.teacher_at: dict[tuple[uuid.UUID, int], set[int]] = defaultdict(set)
        self.room_at: dict[tuple[uuid.UUID, int], list[int]] = defaultdict(list)
        self.class_at: dict[tuple[uuid.UUID, int], set[int]] = defaultdict(set)
        self.class_day: dict[tuple[uuid.UUID, int], set[int]] = defaultdict(set)
        self.teacher_day: dict[tuple[uuid.UUID, int], set[int]] = defaultdict(set)

        self._unary_cache: dict[tuple[uuid.UUID, uuid.UUID, uuid.UUID, int], tuple[float, float]] = {}
        self._unary_hard: list[float] = [0.0] * n
        self._class_bucket_cache: dict[tuple[uuid.UUID, int], tuple[list, float]] = {}
        self._teacher_bucket_cache: dict[tuple[uuid.UUID, int], tuple[list, float]] = {}

        self.hard = 0.0
        self.soft = 0.0

        excluded = problem.excluded_slots
        open_slots = [i for i, s in enumerate(self.slots) if s not in excluded]
        all_slots = list(range(len(self.slots)))
        self.candidates: list[list[int]] = [open_slots or all_slots for _ in lessons]

        by_teacher: dict[uuid.UUID, list[int]] = defaultdict(list)
        by_class: dict[uuid.UUID, list[int]] = defaultdict(list)
        for lesson in lessons:
            by_class[lesson.class_id].append(lesson.index)
            for tid in lesson.teacher_ids:
                by_teacher[tid].append(lesson.index)
        self.by_class = by_class
        self.neighbors: list[tuple[int, ...]] = []
        for lesson in lessons:
            near = set(by_class[lesson.class_id])
            for tid in lesson.teacher_ids:
                near.update(by_teacher[tid])
            near.discard(lesson.index)
            self.neighbors.append(tuple(sorted(near)))

        self._room_order: dict[tuple[int, str | None], tuple[uuid.UUID, ...]] = {}

    # ------------------------
    # Rooms
    # ------------------------
    def _ordered_rooms(self, lesson: Lesson) -> tuple[uuid.UUID, ...]:
        key = (lesson.size, lesson.room_type)
        cached = self._room_order.get(key)
        if cached is not None:
            return cached

        def rank(room) -> tuple:
            wrong_type = lesson.room_type is not None and room.room_type != lesson.room_type
            too_small = room.capacity < lesson.size
            # Fitting rooms smallest-first; rooms that are too small largest-first.
            size_key = room.capacity if not too_small else -room.capacity
            return (wrong_type, too_small, size_key, room.code, str(room.id))

        ordered = tuple(r.id for r in sorted(self.problem.rooms.values(), key=rank))
        self._room_order[key] = ordered
        return ordered

    def best_rooms(self, i: int, sidx: int) -> tuple[uuid.UUID, ...]:
        lesson = self.lessons[i]
        ordered = self._ordered_rooms(lesson)
        chosen: list[uuid.UUID] = []
        for _tid in lesson.teacher_ids:
            pick = None
            for rid in ordered:
                if rid not in chosen and not self.room_at.get((rid, sidx)):
                    pick = rid
                    break
            if pick is None:
                # Every room is taken; reuse the least busy one.
                pick = min(
                    ordered,
                    key=lambda rid: (len(self.room_at.get((rid, sidx), ())) + chosen.count(rid), ordered.index(rid)),
                )
            chosen.append(pick)
        return tuple(chosen)

    # ------------------------
    # Costs
    # ------------------------
    def _unary(self, tid: uuid.UUID, rid: uuid.UUID, cid: uuid.UUID, sidx: int) -> tuple[float, float]:
        key = (tid, rid, cid, sidx)
        hit = self._unary_cache.get(key)
        if hit is None:
            hit = self.book.unary_cost(tid, rid, cid, self.slots[sidx])
            self._unary_cache[key] = hit
        return hit

    def _items(self, members: set[int], extra: tuple[int, int] | None = None) -> list[BucketItem]:
        items = []
        for j in sorted(members):
            lesson = self.lessons[j]
            sidx = self.assign[j]
            items.append(BucketItem(ref=j, period=self.slots[sidx].period, subject_id=lesson.subject_id, occurrence=lesson.occurrence))
        if extra is not None:
            j, sidx = extra
            lesson = self.lessons[j]
            items.append(BucketItem(ref=j, period=self.slots[sidx].period, subject_id=lesson.subject_id, occurrence=lesson.occurrence))
            items.sort(key=lambda it: it.ref)
        return items

    def _class_bucket(self, cid: uuid.UUID, day: int) -> tuple[list, float]:
        key = (cid, day)
        hit = self._class_bucket_cache.get(key)
        if hit is None:
            hit = self.book.class_day(cid, day, self._items(self.class_day.get(key, set())))
            self._class_bucket_cache[key] = hit
        return hit

    def _teacher_bucket(self, tid: uuid.UUID, day: int) -> tuple[list, float]:
        key = (tid, day)
        hit = self._teacher_bucket_cache.get(key)
        if hit is None:
            hit = self.book.teacher_day(tid, day, self._items(self.teacher_day.get(key, set())))
            self._teacher_bucket_cache[key] = hit
        return hit

    def placement_cost(self, i: int, sidx: int, rooms: tuple[uuid.UUID, ...]) -> tuple[float, float]:
        """Marginal (hard amount, soft penalty) of placing lesson ``i``; ``i`` must not be placed."""

        lesson = self.lessons[i]
        day = self.slots[sidx].day
        hard = 0.0
        soft = 0.0

        for tid in lesson.teacher_ids:
            if self.teacher_at.get((tid, sidx)):
                hard += 1
        if self.class_at.get((lesson.class_id, sidx)):
            hard += 1
        seen: set[uuid.UUID] = set()
        for rid in rooms:
            if self.room_at.get((rid, sidx)) or rid in seen:
                hard += 1
            seen.add(rid)
        for tid, rid in zip(lesson.teacher_ids, rooms):
            h, s = self._unary(tid, rid, lesson.class_id, sidx)
            hard += h
            soft += s

        members = self.class_day.get((lesson.class_id, day), set())
        before = bucket_cost(*self._class_bucket(lesson.class_id, day))
        after = bucket_cost(*self.book.class_day(lesson.class_id, day, self._items(members, (i, sidx))))
        hard += after[0] - before[0]
        soft += after[1] - before[1]

        for tid in lesson.teacher_ids:
            members = self.teacher_day.get((tid, day), set())
            before = bucket_cost(*self._teacher_bucket(tid, day))
            after = bucket_cost(*self.book.teacher_day(tid, day, self._items(members, (i, sidx))))
            hard += after[0] - before[0]
            soft += after[1] - before[1]
        return hard, soft

    @staticmethod
    def total(cost: tuple[float, float]) -> float:
        return HARD_WEIGHT * cost[0] + cost[1]

    @property
    def current(self) -> float:
        return HARD_WEIGHT * self.hard + self.soft

    # ------------------------
    # Mutation
    # ------------------------
    def add(self, i: int, sidx: int, rooms: tuple[uuid.UUID, ...]) -> tuple[float, float]:
        cost = self.placement_cost(i, sidx, rooms)
        lesson = self.lessons[i]
        day = self.slots[sidx].day
        self.assign[i] = sidx
        self.rooms[i] = rooms
        for tid in lesson.teacher_ids:
            self.teacher_at[(tid, sidx)].add(i)
            self.teacher_day[(tid, day)].add(i)
            self._teacher_bucket_cache.pop((tid, day), None)
        for rid in rooms:
            self.room_at[(rid, sidx)].append(i)
        self.class_at[(lesson.class_id, sidx)].add(i)
        self.class_day[(lesson.class_id, day)].add(i)
        self._class_bucket_cache.pop((lesson.class_id, day), None)
        self._unary_hard[i] = sum(self._unary(t, r, lesson.class_id, sidx)[0] for t, r in zip(lesson.teacher_ids, rooms))
        self.hard += cost[0]
        self.soft += cost[1]
        return cost

    def remove(self, i: int) -> tuple[float, float]:
        sidx = self.assign[i]
        rooms = self.rooms[i]
        lesson = self.lessons[i]
        day = self.slots[sidx].day
        for tid in lesson.teacher_ids:
            self.teacher_at[(tid, sidx)].discard(i)
            self.teacher_day[(tid, day)].discard(i)
            self._teacher_bucket_cache.pop((tid, day), None)
        for rid in rooms:
            self.room_at[(rid, sidx)].remove(i)
        self.class_at[(lesson.class_id, sidx)].discard(i)
        self.class_day[(lesson.class_id, day)].discard(i)
        self._class_bucket_cache.pop((lesson.class_id, day), None)
        self.assign[i] = None
        self.rooms[i] = ()
        self._unary_hard[i] = 0.0
        cost = self.placement_cost(i, sidx, rooms)
        self.hard -= cost[0]
        self.soft -= cost[1]
        return cost

    def snapshot(self) -> tuple[list[int | None], list[tuple[uuid.UUID, ...]]]:
        return list(self.assign), list(self.rooms)

    def restore(self, snap: tuple[list[int | None], list[tuple[uuid.UUID, ...]]]) -> None:
        assign, rooms = snap
        for i in range(len(self.lessons)):
            if self.assign[i] is not None:
                self.remove(i)
        for i in range(len(self.lessons)):
            if assign[i] is not None:
                self.add(i, assign[i], rooms[i])

    # ------------------------
    # Hard-violation set
    # ------------------------
    def violating(self) -> list[int]:
        bad: set[int] = set()
        for members in self.teacher_at.values():
            if len(members) > 1:
                bad.update(members)
        for users in self.room_at.values():
            if len(users) > 1:
                bad.update(users)
        for members in self.class_at.values():
            if len(members) > 1:
                bad.update(members)
        for i, h in enumerate(self._unary_hard):
            if h > 0:
                bad.add(i)
        for (cid, day), members in self.class_day.items():
            if members:
                for v in self._class_bucket(cid, day)[0]:
                    if v.is_hard:
                        bad.update(v.refs)
        for (tid, day), members in self.teacher_day.items():
            if members:
                for v in self._teacher_bucket(tid, day)[0]:
                    if v.is_hard:
                        bad.update(v.refs)
        return sorted(bad)


def _hint_bonus(problem: Problem, lesson: Lesson, slot: Slot) -> float:
    return HINT_BONUS if problem.hints.get(lesson.key) == slot else 0.0


def _construct(
    search: _Search,
    *,
    deadline: float,
    progress: ProgressCallback | None,
    cancel_event: threading.Event | None,
) -> tuple[int, int, bool]:
    """Greedy most-constrained-first placement.

    Returns (forced placements, rushed placements, cancelled). Once the
    deadline passes the remaining lessons go to their lowest still-legal slot
    without pricing alternatives, so every lesson is still placed.
    """

    problem = search.problem
    lessons = search.lessons
    grid = problem.grid
    n = len(lessons)

    legal: list[set[int]] = []
    for lesson in lessons:
        ok = set()
        for sidx in search.candidates[lesson.index]:
            slot = search.slots[sidx]
            if all(search.book.is_teacher_available(t, slot) for t in lesson.teacher_ids):
                ok.add(sidx)
        legal.append(ok)

    def occupy(i: int, sidx: int) -> None:
        for j in search.neighbors[i]:
            legal[j].discard(sidx)

    # Fixed placements first; they are never moved afterwards.
    fixed_by_key: dict[tuple[uuid.UUID, uuid.UUID, int], dict[uuid.UUID, Any]] = defaultdict(dict)
    for fx in problem.fixed:
        fixed_by_key[(fx.class_id, fx.subject_id, fx.occurrence)][fx.teacher_id] = fx
    placed = 0
    for lesson in lessons:
        pins = fixed_by_key.get(lesson.key)
        if not pins:
            continue
        first = pins[sorted(pins, key=str)[0]]
        sidx = grid.index_of(first.slot)
        free = list(search.best_rooms(lesson.index, sidx))
        rooms = tuple(pins[t].room_id if t in pins else free[k] for k, t in enumerate(lesson.teacher_ids))
        search.add(lesson.index, sidx, rooms)
        search.pinned[lesson.index] = True
        occupy(lesson.index, sidx)
        placed += 1

    remaining = [lesson.index for lesson in lessons if not search.pinned[lesson.index]]
    forced = 0
    while remaining:
        if cancel_event is not None and cancel_event.is_set():
            return forced, 0, True
        if time.monotonic() >= deadline:
            break
        i = min(remaining, key=lambda k: (len(legal[k]), k))
        lesson = lessons[i]
        options = sorted(legal[i])
        if not options:
            forced += 1
            options = search.candidates[i]

        best_key = None
        best_choice = None
        for sidx in options:
            rooms = search.best_rooms(i, sidx)
            cost = search.placement_cost(i, sidx, rooms)
            key = (search.total(cost) - _hint_bonus(problem, lesson, search.slots[sidx]), sidx)
            if best_key is None or key < best_key:
                best_key = key
                best_choice = (sidx, rooms)

        sidx, rooms = best_choice
        search.add(i, sidx, rooms)
        occupy(i, sidx)
        remaining.remove(i)
        placed += 1
        if progress is not None:
            progress(0.5 * placed / max(1, n))

    rushed = 0
    for i in remaining:
        if cancel_event is not None and cancel_event.is_set():
            return forced, rushed, True
        if legal[i]:
            sidx = min(legal[i])
        else:
            forced += 1
            sidx = search.candidates[i][0]
        search.add(i, sidx, search.best_rooms(i, sidx))
        occupy(i, sidx)
        rushed += 1
    if rushed:
        logger.warning("Time budget spent during construction; %s lessons placed without search", rushed)
    return forced, rushed, False


def _repair(
    search: _Search,
    options: SolveOptions,
    *,
    deadline: float,
    progress: ProgressCallback | None,
    cancel_event: threading.Event | None,
) -> tuple[int, bool, str]:
    """Min-conflicts repair with simulated-annealing acceptance. Returns (iterations, cancelled, stop_reason)."""

    rng = random.Random(options.seed)
    temperature = options.initial_temperature
    best_cost = search.current
    best_snap = search.snapshot()
    stall = 0
    iterations = 0
    cancelled = False
    stop_reason = "feasible"

    movable = [i for i in search.violating() if not search.pinned[i]]
    while movable:
        if iterations >= options.max_iterations:
            stop_reason = "iteration_cap"
            break
        if stall >= options.stall_limit:
            stop_reason = "stalled"
            break
        if time.monotonic() >= deadline:
            stop_reason = "time_budget"
            break
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            stop_reason = "cancelled"
            break
        iterations += 1

        i = movable[rng.randrange(len(movable))]
        roll = rng.random()
        old_slot = search.assign[i]
        old_rooms = search.rooms[i]
        lesson = search.lessons[i]

        partner = None
        if roll < 0.2:
            mates = [
                j
                for j in search.by_class[lesson.class_id]
                if j != i and not search.pinned[j] and search.assign[j] != old_slot
            ]
            if mates:
                partner = mates[rng.randrange(len(mates))]

        if partner is not None:
            p_slot = search.assign[partner]
            p_rooms = search.rooms[partner]
            delta = -search.total(search.remove(i)) - search.total(search.remove(partner))
            delta += search.total(search.add(i, p_slot, search.best_rooms(i, p_slot)))
            delta += search.total(search.add(partner, old_slot, search.best_rooms(partner, old_slot)))

            def undo() -> None:
                search.remove(i)
                search.remove(partner)
                search.add(i, old_slot, old_rooms)
                search.add(partner, p_slot, p_rooms)

        else:
            delta = -search.total(search.remove(i))
            choices = [s for s in search.candidates[i] if s != old_slot]
            if not choices:
                search.add(i, old_slot, old_rooms)
                stall += 1
                continue
            if roll < 0.3:
                target = choices[rng.randrange(len(choices))]
                rooms = search.best_rooms(i, target)
            else:
                scored = []
                for s in choices:
                    r = search.best_rooms(i, s)
                    scored.append((search.total(search.placement_cost(i, s, r)), s, r))
                low = min(c for c, _s, _r in scored)
                ties = [(s, r) for c, s, r in scored if c <= low + 1e-9]
                target, rooms = ties[rng.randrange(len(ties))]
            delta += search.total(search.add(i, target, rooms))

            def undo() -> None:
                search.remove(i)
                search.add(i, old_slot, old_rooms)

        accept = delta <= 0 or rng.random() < math.exp(-delta / max(temperature, MIN_TEMPERATURE))
        if accept:
            movable = [k for k in search.violating() if not search.pinned[k]]
            if search.current < best_cost - 1e-9:
                best_cost = search.current
                best_snap = search.snapshot()
                stall = 0
            else:
                stall += 1
        else:
            undo()
            stall += 1
        temperature = max(MIN_TEMPERATURE, temperature * options.cooling)

        if progress is not None and options.max_iterations > 0:
            progress(0.5 + 0.5 * min(1.0, iterations / options.max_iterations))
    else:
        if search.violating():
            stop_reason = "no_movable_lessons"

    if search.current > best_cost + 1e-9:
        search.restore(best_snap)
    return iterations, cancelled, stop_reason


def solve(
    problem: Problem,
    options: SolveOptions | None = None,
    *,
    progress: ProgressCallback | None = None,
    cancel_event: threading.Event | None = None,
) -> SolveResult:
    """Build a timetable for ``problem``.

    Infeasibility is reported in the result, never raised. Malformed input
    raises ``ValidationError`` before any search starts. For the same input
    and seed the output is identical as long as the iteration cap, not the
    time budget, ends the search.
    """

    options = options or SolveOptions()
    validate_problem(problem)
    started = time.monotonic()
    deadline = started + float(options.time_budget_seconds)

    lessons = build_lessons(problem)
    diagnostics = run_infeasibility_analysis(problem, lessons)
    search = _Search(problem, lessons)

    forced, rushed, cancelled = _construct(search, deadline=deadline, progress=progress, cancel_event=cancel_event)
    construction_hard = search.hard
    iterations = 0
    stop_reason = "cancelled" if cancelled else "feasible"
    if rushed and not cancelled:
        stop_reason = "time_budget"
    elif not cancelled:
        iterations, cancelled, stop_reason = _repair(
            search, options, deadline=deadline, progress=progress, cancel_event=cancel_event
        )

    entries: list[Entry] = []
    for lesson in lessons:
        sidx = search.assign[lesson.index]
        if sidx is None:
            continue
        for tid, rid in zip(lesson.teacher_ids, search.rooms[lesson.index]):
            entries.append(
                Entry(
                    teacher_id=tid,
                    subject_id=lesson.subject_id,
                    class_id=lesson.class_id,
                    room_id=rid,
                    slot=search.slots[sidx],
                    occurrence=lesson.occurrence,
                )
            )
    grid = problem.grid
    entries.sort(
        key=lambda e: (grid.index_of(e.slot), str(e.class_id), str(e.subject_id), e.occurrence, str(e.teacher_id))
    )

    placed = [
        Placed(
            ref=pos,
            teacher_id=e.teacher_id,
            subject_id=e.subject_id,
            class_id=e.class_id,
            room_id=e.room_id,
            day=e.slot.day,
            period=e.slot.period,
            occurrence=e.occurrence,
        )
        for pos, e in enumerate(entries)
    ]
    result_eval = evaluate(search.book, placed)
    unsatisfied = [
        {
            "type": v.type,
            "constraint_id": str(v.constraint_id) if v.constraint_id else None,
            "message": v.message,
            "amount": v.amount,
            "entry_positions": sorted(int(r) for r in v.refs),
            "details": v.details,
        }
        for v in result_eval.hard_violations
    ]
    if unsatisfied and not diagnostics:
        diagnostics = [inconclusive(len(unsatisfied))]

    elapsed = time.monotonic() - started
    stats = {
        "lessons": len(lessons),
        "entries": len(entries),
        "forced_placements": forced,
        "rushed_placements": rushed,
        "construction_hard_violations": construction_hard,
        "stop_reason": stop_reason,
        "elapsed_seconds": round(elapsed, 3),
        "unevaluated_constraints": [str(r.id) for r in search.book.unevaluated],
        "diagnostics": diagnostics,
        "diagnostics_summary": summarize_diagnostics(diagnostics),
    }
    logger.info(
        "Solve finished lessons=%s entries=%s hard=%s penalty=%.2f iterations=%s stop=%s elapsed=%.2fs",
        len(lessons),
        len(entries),
        len(unsatisfied),
        result_eval.penalty,
        iterations,
        stop_reason,
        elapsed,
    )
    return SolveResult(
        entries=entries,
        unsatisfied_hard_constraints=unsatisfied,
        optimization_score=result_eval.score,
        penalty=round(result_eval.penalty, 4),
        iterations=iterations,
        cancelled=cancelled,
        stats=stats,
    )
