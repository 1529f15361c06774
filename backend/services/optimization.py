from __future__ import annotations

import copy
import json
import logging
import math
import statistics
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from ortools.sat.python import cp_model
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.errors import NotFoundError, ValidationError
from models import GenerationHint, ScheduleConflict, ScheduleVersion
from services.adjustments import AdjustmentService, version_scope
from services.reference_data import ReferenceDataService
from services.repository import Repository, entry_snapshot, get_or_404, load_entries
from solver.evaluation import Evaluation, Placed, RuleBook, evaluate
from solver.problem import Problem, Slot


logger = logging.getLogger(__name__)

SUGGESTION_TYPES = ("workload_balance", "minimize_gaps", "resource_utilization", "swap")
PRIORITIES = ("low", "medium", "high")
APPLY_MODES = ("immediate", "next_generation", "preview")
COMPARE_CRITERIA = (
    "workload_balance",
    "room_utilization",
    "conflict_count",
    "constraint_satisfaction",
    "optimization_score",
)

MAX_PER_TYPE = 5
MAX_SWAP_TRIALS = 400
REPACK_TIME_LIMIT_SECONDS = 2.0
_NAMESPACE = uuid.UUID("6f1c8a52-3b0e-4d7e-9a43-0c5f2b7e8d11")


def suggestion_priority(improvement: float) -> str:
    if improvement >= 10:
        return "high"
    if improvement >= 2:
        return "medium"
    return "low"


@dataclass
class Suggestion:
    id: uuid.UUID
    version_id: uuid.UUID
    type: str
    title: str
    description: str
    priority: str
    estimated_improvement: float
    adjustments: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "version_id": str(self.version_id),
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "estimated_improvement": self.estimated_improvement,
            "payload": {"adjustments": self.adjustments},
        }


# ------------------------
# Simulation on entry snapshots
# ------------------------
def _siblings(entries: Iterable[dict[str, Any]], entry: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        e
        for e in entries
        if e["class_id"] == entry["class_id"]
        and e["subject_id"] == entry["subject_id"]
        and e["occurrence"] == entry["occurrence"]
        and e["day"] == entry["day"]
        and e["period"] == entry["period"]
    ]


def simulate(snapshots: list[dict[str, Any]], items: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Apply adjustments to copies of entry snapshots, the way a draft would change."""

    entries = copy.deepcopy(snapshots)
    by_id = {e["id"]: e for e in entries}

    def _entry(value: Any) -> dict[str, Any]:
        e = by_id.get(str(value))
        if e is None:
            raise NotFoundError("entry_not_found", details={"entry_id": str(value)})
        return e

    def _move(group: list[dict[str, Any]], day: int, period: int) -> None:
        for e in group:
            e["day"], e["period"] = day, period

    for raw in items:
        action = raw.get("action")
        entry = _entry(raw.get("entry_id"))
        if action == "swap":
            other = _entry(raw.get("with_entry_id"))
            slot_a = (entry["day"], entry["period"])
            slot_b = (other["day"], other["period"])
            group_a = _siblings(entries, entry)
            group_b = _siblings(entries, other)
            _move(group_a, *slot_b)
            _move(group_b, *slot_a)
            entry["room_id"], other["room_id"] = other["room_id"], entry["room_id"]
        elif action in ("move", "reschedule"):
            if raw.get("new_slot") is not None:
                slot = raw["new_slot"]
                _move(_siblings(entries, entry), int(slot["day"]), int(slot["period"]))
            if raw.get("new_room_id"):
                entry["room_id"] = str(raw["new_room_id"])
            if raw.get("new_teacher_id"):
                entry["teacher_id"] = str(raw["new_teacher_id"])
        elif action == "cancel":
            entries = [e for e in entries if e["id"] != entry["id"]]
            del by_id[entry["id"]]
        else:
            raise ValidationError("invalid_adjustment", f"Unknown action '{action}'.")
    return entries


def to_placed(snapshots: Iterable[dict[str, Any]]) -> list[Placed]:
    return [
        Placed(
            ref=e["id"],
            teacher_id=uuid.UUID(e["teacher_id"]),
            subject_id=uuid.UUID(e["subject_id"]),
            class_id=uuid.UUID(e["class_id"]),
            room_id=uuid.UUID(e["room_id"]),
            day=int(e["day"]),
            period=int(e["period"]),
            occurrence=int(e["occurrence"]),
        )
        for e in snapshots
    ]


class _Usage:
    """Which snapshots occupy each (teacher | room | class, slot)."""

    def __init__(self, entries: list[dict[str, Any]]):
        self.teacher: dict[tuple[str, Slot], set[str]] = defaultdict(set)
        self.room: dict[tuple[str, Slot], set[str]] = defaultdict(set)
        self.klass: dict[tuple[str, Slot], set[str]] = defaultdict(set)
        for e in entries:
            s = Slot(e["day"], e["period"])
            self.teacher[(e["teacher_id"], s)].add(e["id"])
            self.room[(e["room_id"], s)].add(e["id"])
            self.klass[(e["class_id"], s)].add(e["id"])

    def free_for(self, group: list[dict[str, Any]], slot: Slot, book: RuleBook) -> bool:
        ignore = {e["id"] for e in group}
        if self.klass.get((group[0]["class_id"], slot), set()) - ignore:
            return False
        for e in group:
            if self.teacher.get((e["teacher_id"], slot), set()) - ignore:
                return False
            if self.room.get((e["room_id"], slot), set()) - ignore:
                return False
            if not book.is_teacher_available(uuid.UUID(e["teacher_id"]), slot, hard_only=False):
                return False
        return True


def _room_slack(problem: Problem, e: dict[str, Any]) -> bool:
    """True when the entry sits in a room that is too small or larger than its class."""
    room = problem.rooms.get(uuid.UUID(e["room_id"]))
    klass = problem.classes.get(uuid.UUID(e["class_id"]))
    if room is None or klass is None:
        return False
    return room.capacity != klass.size


def _day_gaps(grid_periods: tuple[int, ...], periods: Iterable[int]) -> int:
    index = {p: i for i, p in enumerate(grid_periods)}
    pos = sorted({index[p] for p in periods if p in index})
    if len(pos) < 2:
        return 0
    return (pos[-1] - pos[0] + 1) - len(pos)


class OptimizationAnalyzer:
    """Advisory analytics over a version; mutations go through the adjustment path."""

    def __init__(self, repo: Repository, reference: ReferenceDataService, adjustments: AdjustmentService):
        self._repo = repo
        self._reference = reference
        self._adjustments = adjustments

    def _load(
        self, version_id: uuid.UUID, school_id: uuid.UUID | None = None
    ) -> tuple[ScheduleVersion, list[dict[str, Any]], Problem]:
        def _work(db: Session) -> tuple[ScheduleVersion, list[dict[str, Any]]]:
            version = get_or_404(db, ScheduleVersion, version_id, "version_not_found")
            return version, [entry_snapshot(e) for e in load_entries(db, version_id)]

        version, snaps = self._repo.run(_work)
        if school_id is not None and version.school_id != school_id:
            raise NotFoundError("version_not_found", details={"id": str(version_id)})
        problem = self._reference.load_problem(version_scope(version))
        return version, snaps, problem

    # ------------------------
    # Metrics
    # ------------------------
    def _metrics(self, version: ScheduleVersion, snaps: list[dict[str, Any]], problem: Problem) -> dict[str, Any]:
        grid = problem.grid
        days = grid.days
        result = evaluate(RuleBook(problem), to_placed(snaps))

        per_teacher: dict[str, dict[int, list[int]]] = defaultdict(lambda: defaultdict(list))
        per_class: dict[str, dict[int, set[int]]] = defaultdict(lambda: defaultdict(set))
        per_room: dict[str, list[dict[str, Any]]] = defaultdict(list)
        per_class_subject: dict[tuple[str, str], dict[int, int]] = defaultdict(lambda: defaultdict(int))
        for e in snaps:
            per_teacher[e["teacher_id"]][e["day"]].append(e["period"])
            per_class[e["class_id"]][e["day"]].add(e["period"])
            per_room[e["room_id"]].append(e)
            per_class_subject[(e["class_id"], e["subject_id"])][e["day"]] += 1

        teachers = []
        totals = []
        teacher_gaps = 0
        for tid, info in sorted(problem.teachers.items(), key=lambda kv: kv[1].code):
            by_day = per_teacher.get(str(tid), {})
            counts = {d: len(by_day.get(d, [])) for d in days}
            gaps = sum(_day_gaps(grid.periods_on(d), by_day.get(d, [])) for d in days)
            total = sum(counts.values())
            totals.append(total)
            teacher_gaps += gaps
            teachers.append(
                {
                    "teacher_id": str(tid),
                    "code": info.code,
                    "total_periods": total,
                    "per_day": counts,
                    "max_daily": max(counts.values()) if counts else 0,
                    "gaps": gaps,
                }
            )
        mean = statistics.fmean(totals) if totals else 0.0
        variance = statistics.pvariance(totals) if len(totals) > 1 else 0.0

        class_gaps = []
        for cid, info in sorted(problem.classes.items(), key=lambda kv: kv[1].code):
            by_day = per_class.get(str(cid), {})
            class_gaps.append(
                {
                    "class_id": str(cid),
                    "code": info.code,
                    "gaps": sum(_day_gaps(grid.periods_on(d), by_day.get(d, set())) for d in days),
                }
            )

        usable = max(1, len([s for s in grid.slots if s not in problem.excluded_slots]))
        rooms = []
        fills = []
        for rid, room in sorted(problem.rooms.items(), key=lambda kv: kv[1].code):
            used = per_room.get(str(rid), [])
            slots_used = len({(e["day"], e["period"]) for e in used})
            room_fill = []
            for e in used:
                klass = problem.classes.get(uuid.UUID(e["class_id"]))
                if klass is not None and room.capacity > 0:
                    room_fill.append(min(1.0, klass.size / room.capacity))
            fills.extend(room_fill)
            rooms.append(
                {
                    "room_id": str(rid),
                    "code": room.code,
                    "slots_used": slots_used,
                    "utilization": round(slots_used / usable, 4),
                    "average_fill": round(statistics.fmean(room_fill), 4) if room_fill else 0.0,
                }
            )

        distribution = []
        for (cid, sid), by_day in sorted(per_class_subject.items()):
            subject = problem.subjects.get(uuid.UUID(sid))
            distribution.append(
                {
                    "class_id": cid,
                    "subject_id": sid,
                    "subject_code": subject.code if subject is not None else None,
                    "per_day": dict(sorted(by_day.items())),
                    "days_used": len(by_day),
                    "max_daily": max(by_day.values()),
                }
            )

        return {
            "version_id": str(version.id),
            "revision": int(version.revision),
            "optimization_score": result.score,
            "penalty": round(result.penalty, 4),
            "hard_violations": result.hard_count,
            "teacher_workload": {
                "teachers": teachers,
                "mean": round(mean, 4),
                "variance": round(variance, 4),
                "stdev": round(math.sqrt(variance), 4),
            },
            "gaps": {"teacher_total": teacher_gaps, "classes": class_gaps},
            "room_utilization": {
                "rooms": rooms,
                "average_fill": round(statistics.fmean(fills), 4) if fills else 0.0,
            },
            "subject_distribution": distribution,
        }

    def metrics(self, version_id: uuid.UUID, *, school_id: uuid.UUID | None = None) -> dict[str, Any]:
        version, snaps, problem = self._load(version_id, school_id)
        return self._metrics(version, snaps, problem)

    # ------------------------
    # Suggestions
    # ------------------------
    def _candidates_workload(self, snaps, problem, book, usage) -> Iterable[tuple[str, str, list[dict[str, Any]]]]:
        days = problem.grid.days
        if len(days) < 2:
            return
        by_teacher: dict[str, dict[int, list[dict[str, Any]]]] = defaultdict(lambda: defaultdict(list))
        for e in snaps:
            by_teacher[e["teacher_id"]][e["day"]].append(e)
        for tid in sorted(by_teacher):
            loads = {d: len(by_teacher[tid].get(d, [])) for d in days}
            heavy = max(days, key=lambda d: (loads[d], -d))
            light = sorted(days, key=lambda d: (loads[d], d))
            if loads[heavy] - loads[light[0]] < 2:
                continue
            for e in sorted(by_teacher[tid][heavy], key=lambda e: (e["period"], e["id"])):
                group = _siblings(snaps, e)
                found = None
                for day in light:
                    if loads[day] + 1 >= loads[heavy]:
                        break
                    for period in problem.grid.periods_on(day):
                        slot = Slot(day, period)
                        if slot not in problem.excluded_slots and usage.free_for(group, slot, book):
                            found = slot
                            break
                    if found is not None:
                        break
                if found is not None:
                    code = problem.teachers[uuid.UUID(tid)].code if uuid.UUID(tid) in problem.teachers else tid
                    yield (
                        f"Balance workload of {code}",
                        f"Move a lesson from day {heavy} ({loads[heavy]} periods) to day {found.day}.",
                        [{"action": "move", "entry_id": e["id"], "new_slot": found.as_dict()}],
                    )
                    break

    def _candidates_gaps(self, snaps, problem, book, usage) -> Iterable[tuple[str, str, list[dict[str, Any]]]]:
        for owner in ("class_id", "teacher_id"):
            buckets: dict[tuple[str, int], list[dict[str, Any]]] = defaultdict(list)
            for e in snaps:
                buckets[(e[owner], e["day"])].append(e)
            for (oid, day), items in sorted(buckets.items()):
                periods = problem.grid.periods_on(day)
                used = {e["period"] for e in items}
                if _day_gaps(periods, used) == 0:
                    continue
                first, last = min(used), max(used)
                holes = [p for p in periods if first < p < last and p not in used]
                edges = [e for e in items if e["period"] == last] + [e for e in items if e["period"] == first]
                done = False
                for e in edges:
                    group = _siblings(snaps, e)
                    for p in holes:
                        slot = Slot(day, p)
                        if slot in problem.excluded_slots or not usage.free_for(group, slot, book):
                            continue
                        who = "class" if owner == "class_id" else "teacher"
                        yield (
                            f"Close a {who} gap on day {day}",
                            f"Move the period {e['period']} lesson into free period {p}.",
                            [{"action": "move", "entry_id": e["id"], "new_slot": slot.as_dict()}],
                        )
                        done = True
                        break
                    if done:
                        break

    def _candidates_swap(self, snaps, base: Evaluation) -> Iterable[tuple[str, str, list[dict[str, Any]]]]:
        hot: set[str] = set()
        for v in base.violations:
            if not v.is_hard:
                hot.update(str(r) for r in v.refs)
        by_class: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for e in snaps:
            by_class[e["class_id"]].append(e)
        trials = 0
        for e in sorted(snaps, key=lambda e: e["id"]):
            if e["id"] not in hot:
                continue
            for other in sorted(by_class[e["class_id"]], key=lambda o: (o["day"], o["period"], o["id"])):
                if trials >= MAX_SWAP_TRIALS:
                    return
                if (other["day"], other["period"]) == (e["day"], e["period"]) or other["subject_id"] == e["subject_id"]:
                    continue
                trials += 1
                yield (
                    "Swap two lessons",
                    f"Swap the day {e['day']} period {e['period']} lesson with day {other['day']} period {other['period']}.",
                    [{"action": "swap", "entry_id": e["id"], "with_entry_id": other["id"]}],
                )

    def _repack_slot(self, problem: Problem, book: RuleBook, entries: list[dict[str, Any]]) -> dict[str, str]:
        """Best-fit room assignment for the entries of one slot; returns entry id -> new room id."""

        rooms = sorted(problem.rooms.values(), key=lambda r: r.code)
        model = cp_model.CpModel()
        x = {}
        by_entry = defaultdict(list)
        by_room = defaultdict(list)
        obj_terms = []
        for e in entries:
            klass = problem.classes.get(uuid.UUID(e["class_id"]))
            size = klass.size if klass is not None else 0
            subject = problem.subjects.get(uuid.UUID(e["subject_id"]))
            wanted = subject.room_type if subject is not None else None
            for room in rooms:
                current = str(room.id) == e["room_id"]
                fits = book.room_fits(room.id, size, wanted)
                if not fits and not current:
                    continue
                xv = model.NewBoolVar(f"x_{e['id']}_{room.code}")
                x[(e["id"], str(room.id))] = xv
                by_entry[e["id"]].append(xv)
                by_room[str(room.id)].append(xv)
                if fits and room.capacity > 0:
                    cost = int(round(1000 * (room.capacity - size) / room.capacity))
                else:
                    cost = 100_000
                if not current:
                    cost += 1
                obj_terms.append(cost * xv)

        for terms in by_entry.values():
            model.Add(sum(terms) == 1)
        for terms in by_room.values():
            model.Add(sum(terms) <= 1)
        model.Minimize(sum(obj_terms))

        solver = cp_model.CpSolver()
        solver.parameters.max_time_in_seconds = float(REPACK_TIME_LIMIT_SECONDS)
        solver.parameters.num_search_workers = 1
        solver.parameters.random_seed = 0
        status = solver.Solve(model)
        if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
            return {}
        current = {e["id"]: e["room_id"] for e in entries}
        changes = {}
        for (eid, rid), xv in x.items():
            if solver.Value(xv) and rid != current[eid]:
                changes[eid] = rid
        return changes

    def _candidates_rooms(self, snaps, problem, book) -> Iterable[tuple[str, str, list[dict[str, Any]]]]:
        by_slot: dict[Slot, list[dict[str, Any]]] = defaultdict(list)
        for e in snaps:
            by_slot[Slot(e["day"], e["period"])].append(e)
        for slot in sorted(by_slot):
            entries = sorted(by_slot[slot], key=lambda e: e["id"])
            if not any(_room_slack(problem, e) for e in entries):
                continue
            changes = self._repack_slot(problem, book, entries)
            if not changes:
                continue
            yield (
                f"Repack rooms on day {slot.day} period {slot.period}",
                f"Reassign {len(changes)} lesson(s) to better-fitting rooms.",
                [{"action": "reschedule", "entry_id": eid, "new_room_id": rid} for eid, rid in sorted(changes.items())],
            )

    def _suggest(self, version: ScheduleVersion, snaps: list[dict[str, Any]], problem: Problem, kind: str | None) -> list[Suggestion]:
        book = RuleBook(problem)
        base = evaluate(book, to_placed(snaps))
        usage = _Usage(snaps)
        generators = {
            "workload_balance": lambda: self._candidates_workload(snaps, problem, book, usage),
            "minimize_gaps": lambda: self._candidates_gaps(snaps, problem, book, usage),
            "swap": lambda: self._candidates_swap(snaps, base),
            "resource_utilization": lambda: self._candidates_rooms(snaps, problem, book),
        }

        out: dict[uuid.UUID, Suggestion] = {}
        for stype in SUGGESTION_TYPES:
            if kind is not None and stype != kind:
                continue
            found: list[Suggestion] = []
            for title, description, adjustments in generators[stype]():
                after = evaluate(book, to_placed(simulate(snaps, adjustments)))
                if after.hard_count > base.hard_count:
                    continue
                improvement = round(base.penalty - after.penalty, 4)
                if improvement <= 1e-6:
                    continue
                canonical = json.dumps(
                    {"version": str(version.id), "revision": int(version.revision), "type": stype, "adjustments": adjustments},
                    sort_keys=True,
                )
                sid = uuid.uuid5(_NAMESPACE, canonical)
                if sid in out:
                    continue
                found.append(
                    Suggestion(
                        id=sid,
                        version_id=version.id,
                        type=stype,
                        title=title,
                        description=description,
                        priority=suggestion_priority(improvement),
                        estimated_improvement=improvement,
                        adjustments=adjustments,
                    )
                )
            found.sort(key=lambda s: (-s.estimated_improvement, str(s.id)))
            for s in found[:MAX_PER_TYPE]:
                out[s.id] = s
        return sorted(out.values(), key=lambda s: (-s.estimated_improvement, s.type, str(s.id)))

    def suggest(
        self,
        version_id: uuid.UUID,
        *,
        type: str | None = None,
        priority: str | None = None,
        school_id: uuid.UUID | None = None,
    ) -> list[Suggestion]:
        """Ranked improvements verified by re-evaluating the simulated schedule. Never mutates."""

        if type is not None and type not in SUGGESTION_TYPES:
            raise ValidationError("invalid_suggestion_type", details={"types": list(SUGGESTION_TYPES)})
        if priority is not None and priority not in PRIORITIES:
            raise ValidationError("invalid_priority", details={"priorities": list(PRIORITIES)})
        version, snaps, problem = self._load(version_id, school_id)
        found = self._suggest(version, snaps, problem, type)
        if priority is not None:
            found = [s for s in found if s.priority == priority]
        logger.debug("Version %s: %s optimization suggestions", version_id, len(found))
        return found

    # ------------------------
    # Apply
    # ------------------------
    def apply(
        self,
        version_id: uuid.UUID,
        suggestion_ids: list[uuid.UUID],
        mode: str,
        actor_id: uuid.UUID,
        *,
        school_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        if mode not in APPLY_MODES:
            raise ValidationError("invalid_apply_mode", details={"modes": list(APPLY_MODES)})
        ids = list(dict.fromkeys(uuid.UUID(str(s)) for s in suggestion_ids))
        if not ids:
            raise ValidationError("no_suggestions", "At least one suggestion id is required.")

        version, snaps, problem = self._load(version_id, school_id)
        available = {s.id: s for s in self._suggest(version, snaps, problem, None)}
        missing = [str(s) for s in ids if s not in available]
        if missing:
            raise NotFoundError(
                "suggestion_not_found",
                "Suggestions are stale or unknown; fetch them again.",
                details={"suggestion_ids": missing},
            )
        chosen = [available[s] for s in ids]

        seen: set[str] = set()
        items: list[dict[str, Any]] = []
        for s in chosen:
            refs = {a["entry_id"] for a in s.adjustments} | {a["with_entry_id"] for a in s.adjustments if a.get("with_entry_id")}
            if refs & seen:
                raise ValidationError(
                    "overlapping_suggestions",
                    "Two selected suggestions change the same lesson.",
                    details={"suggestion_id": str(s.id)},
                )
            seen |= refs
            items.extend({**a, "reason": s.title} for a in s.adjustments)

        simulated = simulate(snaps, items)
        after = evaluate(RuleBook(problem), to_placed(simulated))
        before_by_id = {e["id"]: e for e in snaps}
        diff = []
        for e in simulated:
            old = before_by_id[e["id"]]
            if old != e:
                diff.append({"entry_id": e["id"], "before": old, "after": e})
        out: dict[str, Any] = {
            "mode": mode,
            "version_id": str(version_id),
            "suggestion_ids": [str(s) for s in ids],
            "diff": diff,
            "projected_score": after.score,
            "projected_penalty": round(after.penalty, 4),
        }

        if mode == "preview":
            return out

        if mode == "immediate":
            result = self._adjustments.adjust(
                version_id,
                items,
                actor_id,
                source="optimization",
                expected_revision=int(version.revision),
                school_id=school_id,
            )
            out["revision"] = result.revision
            out["records"] = len(result.records)
            out["new_conflict_ids"] = [str(c.id) for c in result.new_conflicts]
            logger.info("Applied %s optimization suggestions to version %s", len(ids), version_id)
            return out

        placements = [
            {
                "class_id": e["class_id"],
                "subject_id": e["subject_id"],
                "teacher_id": e["teacher_id"],
                "occurrence": e["occurrence"],
                "day": e["day"],
                "period": e["period"],
            }
            for e in (d["after"] for d in diff)
        ]

        def _work(db: Session) -> GenerationHint:
            hint = GenerationHint(
                school_id=version.school_id,
                academic_year_id=version.academic_year_id,
                term_id=version.term_id,
                version_id=version.id,
                suggestion_ids=[str(s) for s in ids],
                placements=placements,
                created_by=actor_id,
            )
            db.add(hint)
            db.flush()
            return hint

        hint = self._repo.run(_work)
        out["hint_id"] = str(hint.id)
        logger.info("Stored %s placements from version %s for the next generation", len(placements), version_id)
        return out

    # ------------------------
    # Scenario comparison
    # ------------------------
    def compare(
        self,
        version_ids: list[uuid.UUID],
        criteria: list[str] | None = None,
        weightings: Mapping[str, float] | None = None,
        *,
        school_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        ids = list(dict.fromkeys(version_ids))
        if not 2 <= len(ids) <= 5:
            raise ValidationError("invalid_comparison", "Compare between 2 and 5 distinct versions.")
        criteria = list(criteria or COMPARE_CRITERIA)
        unknown = [c for c in criteria if c not in COMPARE_CRITERIA]
        if unknown:
            raise ValidationError("invalid_criteria", details={"unknown": unknown, "criteria": list(COMPARE_CRITERIA)})
        weights = {c: float((weightings or {}).get(c, 1.0)) for c in criteria}
        if any(w < 0 for w in weights.values()) or sum(weights.values()) <= 0:
            raise ValidationError("invalid_weightings", "Weightings must be non-negative and not all zero.")

        rows = []
        for vid in ids:
            version, snaps, problem = self._load(vid, school_id)
            m = self._metrics(version, snaps, problem)
            result = evaluate(RuleBook(problem), to_placed(snaps))
            open_conflicts = self._repo.run(
                lambda db: db.execute(
                    select(func.count(ScheduleConflict.id))
                    .where(ScheduleConflict.version_id == vid)
                    .where(ScheduleConflict.is_resolved.is_(False))
                ).scalar_one()
            )
            active = {r.id for r in problem.constraints}
            violated = {v.constraint_id for v in result.violations if v.constraint_id is not None}
            raw = {
                "workload_balance": m["teacher_workload"]["stdev"],
                "room_utilization": m["room_utilization"]["average_fill"],
                "conflict_count": int(open_conflicts),
                "constraint_satisfaction": (len(active - violated) / len(active)) if active else 1.0,
                "optimization_score": m["optimization_score"],
            }
            values = {
                "workload_balance": round(100.0 / (1.0 + raw["workload_balance"]), 2),
                "room_utilization": round(100.0 * raw["room_utilization"], 2),
                "conflict_count": round(100.0 / (1.0 + raw["conflict_count"]), 2),
                "constraint_satisfaction": round(100.0 * raw["constraint_satisfaction"], 2),
                "optimization_score": round(raw["optimization_score"], 2),
            }
            total = sum(weights.values())
            overall = round(sum(values[c] * weights[c] for c in criteria) / total, 2)
            rows.append(
                {
                    "version_id": str(vid),
                    "name": version.name,
                    "status": str(version.status),
                    "raw": {c: raw[c] for c in criteria},
                    "values": {c: values[c] for c in criteria},
                    "overall": overall,
                }
            )

        ranking = [r["version_id"] for r in sorted(rows, key=lambda r: -r["overall"])]
        return {
            "criteria": criteria,
            "weightings": weights,
            "versions": rows,
            "ranking": ranking,
            "best_version_id": ranking[0],
        }
