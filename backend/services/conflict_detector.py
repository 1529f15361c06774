from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import ConflictError, ValidationError
from core.events import CONFLICT_CREATED, CONFLICT_RESOLVED, EventBus
from models import ScheduleConflict, ScheduleEntry, ScheduleVersion
from models.base import utcnow
from services.adjustments import apply_adjustments, require_draft, version_scope
from services.locks import VersionLocks
from services.reference_data import ReferenceDataService
from services.repository import Repository, get_or_404, load_entries
from solver.evaluation import (
    CONSTRAINT_VIOLATION,
    ROOM_CONFLICT,
    Placed,
    RuleBook,
    Violation,
    evaluate,
)
from solver.problem import Problem, Slot


logger = logging.getLogger(__name__)

MUTATING_METHODS = ("swap", "move", "cancel", "reschedule")
RESOLUTION_METHODS = MUTATING_METHODS + ("auto_resolve", "constraint_relax")
BULK_METHODS = ("auto_resolve", "constraint_relax")
MAX_MOVE_SUGGESTIONS = 2

Identity = tuple[str, str | None, tuple[str, ...]]


def soft_severity(penalty: float) -> str:
    if penalty < 5:
        return "low"
    if penalty < 20:
        return "medium"
    return "high"


def placed_entries(entries: Iterable[ScheduleEntry]) -> list[Placed]:
    return [
        Placed(
            ref=e.id,
            teacher_id=e.teacher_id,
            subject_id=e.subject_id,
            class_id=e.class_id,
            room_id=e.room_id,
            day=int(e.day_of_week),
            period=int(e.period),
            occurrence=int(e.occurrence),
        )
        for e in entries
    ]


def conflict_identity(row: ScheduleConflict) -> Identity:
    return (
        str(row.conflict_type),
        str(row.constraint_id) if row.constraint_id else None,
        tuple(sorted(str(x) for x in (row.affected_entry_ids or []))),
    )


def unsatisfied_payload(violations: Iterable[Violation]) -> list[dict[str, Any]]:
    return [
        {
            "type": v.type,
            "constraint_id": str(v.constraint_id) if v.constraint_id else None,
            "message": v.message,
            "amount": v.amount,
            "entry_ids": sorted(str(r) for r in v.refs),
        }
        for v in violations
        if v.is_hard
    ]


class _Occupancy:
    """Who uses which (teacher | room | class, slot) in a version; used to test alternatives."""

    def __init__(self, entries: list[ScheduleEntry]):
        self.entries = entries
        self.teacher: dict[tuple[uuid.UUID, Slot], set[uuid.UUID]] = defaultdict(set)
        self.room: dict[tuple[uuid.UUID, Slot], set[uuid.UUID]] = defaultdict(set)
        self.klass: dict[tuple[uuid.UUID, Slot], set[uuid.UUID]] = defaultdict(set)
        for e in entries:
            s = Slot(int(e.day_of_week), int(e.period))
            self.teacher[(e.teacher_id, s)].add(e.id)
            self.room[(e.room_id, s)].add(e.id)
            self.klass[(e.class_id, s)].add(e.id)

    def group(self, entry: ScheduleEntry) -> list[ScheduleEntry]:
        return [
            e
            for e in self.entries
            if e.class_id == entry.class_id
            and e.subject_id == entry.subject_id
            and e.occurrence == entry.occurrence
            and e.day_of_week == entry.day_of_week
            and e.period == entry.period
        ]

    def fits(self, group: list[ScheduleEntry], slot: Slot, book: RuleBook, ignore: set[uuid.UUID]) -> bool:
        rooms = [e.room_id for e in group]
        if len(set(rooms)) != len(rooms):
            return False
        for e in group:
            if self.teacher.get((e.teacher_id, slot), set()) - ignore:
                return False
            if self.room.get((e.room_id, slot), set()) - ignore:
                return False
            if not book.is_teacher_available(e.teacher_id, slot):
                return False
        if self.klass.get((group[0].class_id, slot), set()) - ignore:
            return False
        return True


class ConflictDetector:
    """Finds, stores and resolves conflicts of a schedule version."""

    def __init__(self, repo: Repository, reference: ReferenceDataService, locks: VersionLocks, events: EventBus):
        self._repo = repo
        self._reference = reference
        self._locks = locks
        self._events = events

    # ------------------------
    # Evaluation
    # ------------------------
    def _suggest(
        self,
        violation: Violation,
        occupancy: _Occupancy,
        by_id: Mapping[uuid.UUID, ScheduleEntry],
        problem: Problem,
        book: RuleBook,
    ) -> list[dict[str, Any]]:
        affected = [by_id[r] for r in violation.refs if r in by_id]
        if not affected:
            return []
        target = max(affected, key=lambda e: (int(e.position), str(e.id)))
        group = occupancy.group(target)
        here = Slot(int(target.day_of_week), int(target.period))
        own = {e.id for e in group}
        out: list[dict[str, Any]] = []

        if violation.type == ROOM_CONFLICT:
            klass = problem.classes.get(target.class_id)
            size = klass.size if klass is not None else 0
            subject = problem.subjects.get(target.subject_id)
            wanted = subject.room_type if subject is not None else None
            rooms = sorted(
                problem.rooms.values(),
                key=lambda r: (wanted is not None and r.room_type != wanted, r.capacity < size, r.capacity, r.code),
            )
            for room in rooms:
                if room.id == target.room_id or occupancy.room.get((room.id, here)):
                    continue
                if room.capacity < size:
                    continue
                out.append(
                    {
                        "action": "reschedule",
                        "entry_id": str(target.id),
                        "new_room_id": str(room.id),
                        "description": f"Use free room {room.code} at the same time.",
                    }
                )
                break

        moves = 0
        for slot in problem.grid.slots:
            if moves >= MAX_MOVE_SUGGESTIONS:
                break
            if slot == here or slot in problem.excluded_slots:
                continue
            if occupancy.fits(group, slot, book, own):
                out.append(
                    {
                        "action": "move",
                        "entry_id": str(target.id),
                        "new_slot": slot.as_dict(),
                        "description": f"Move to day {slot.day} period {slot.period}.",
                    }
                )
                moves += 1

        for other in occupancy.entries:
            if other.class_id != target.class_id or other.id in own:
                continue
            there = Slot(int(other.day_of_week), int(other.period))
            if there == here:
                continue
            other_group = occupancy.group(other)
            both = own | {e.id for e in other_group}
            if occupancy.fits(group, there, book, both) and occupancy.fits(other_group, here, book, both):
                out.append(
                    {
                        "action": "swap",
                        "entry_id": str(target.id),
                        "with_entry_id": str(other.id),
                        "description": f"Swap with the lesson at day {there.day} period {there.period}.",
                    }
                )
                break

        if violation.type != CONSTRAINT_VIOLATION or not violation.is_hard:
            out.append({"action": "cancel", "entry_id": str(target.id), "description": "Cancel this lesson."})
        return out

    def reconcile(
        self,
        db: Session,
        version: ScheduleVersion,
        problem: Problem,
        *,
        changed_ids: set[uuid.UUID] | None = None,
        touched: list[dict[str, Any]] | None = None,
        cleared_method: str = "cleared_by_rescan",
    ) -> tuple[list[ScheduleConflict], list[ScheduleConflict]]:
        """Bring stored conflicts in line with the version's entries.

        With ``changed_ids`` only violations and records touching the changed
        entries (or their teachers, rooms and classes) are considered; other
        records are left as they are. Returns (created, cleared).
        """

        entries = load_entries(db, version.id)
        by_id = {e.id: e for e in entries}
        book = RuleBook(problem)
        result = evaluate(book, placed_entries(entries))

        version.penalty = round(result.penalty, 4)
        version.optimization_score = result.score
        version.unsatisfied_hard_constraints = unsatisfied_payload(result.violations)

        keys: set[str] | None = None
        if changed_ids is not None:
            keys = {str(x) for x in changed_ids}
            for snap in touched or []:
                for side in (snap.get("before"), snap.get("after")):
                    if side:
                        keys.update(str(side[k]) for k in ("teacher_id", "room_id", "class_id"))

        def touches_entry_ids(ids: Iterable[Any]) -> bool:
            for raw in ids:
                if str(raw) in keys:
                    return True
                e = by_id.get(raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw)))
                if e is not None and {str(e.teacher_id), str(e.room_id), str(e.class_id)} & keys:
                    return True
            return False

        def relevant(v: Violation) -> bool:
            if keys is None:
                return True
            if touches_entry_ids(v.refs):
                return True
            return any(str(v.details.get(k)) in keys for k in ("class_id", "teacher_id", "room_id") if v.details.get(k))

        existing = db.execute(
            select(ScheduleConflict)
            .where(ScheduleConflict.version_id == version.id)
            .where(ScheduleConflict.is_resolved.is_(False))
        ).scalars().all()
        by_identity: dict[Identity, ScheduleConflict] = {conflict_identity(c): c for c in existing}
        # A relaxed conflict stays closed for as long as the same violation persists.
        relaxed = db.execute(
            select(ScheduleConflict)
            .where(ScheduleConflict.version_id == version.id)
            .where(ScheduleConflict.is_resolved.is_(True))
            .where(ScheduleConflict.resolution_method == "constraint_relax")
        ).scalars().all()
        for c in relaxed:
            by_identity.setdefault(conflict_identity(c), c)

        occupancy = _Occupancy(entries)
        created: list[ScheduleConflict] = []
        live: set[Identity] = set()
        for v in result.violations:
            if v.constraint_id is None and not v.is_hard:
                continue
            ident = v.identity()
            live.add(ident)
            if ident in by_identity or not relevant(v):
                continue
            row = ScheduleConflict(
                version_id=version.id,
                conflict_type=v.type,
                severity="critical" if v.is_hard else soft_severity(v.penalty),
                description=v.message,
                constraint_id=v.constraint_id,
                affected_entry_ids=list(ident[2]),
                suggested_resolutions=self._suggest(v, occupancy, by_id, problem, book),
                details={**v.details, "amount": v.amount, "is_hard": v.is_hard},
            )
            db.add(row)
            by_identity[ident] = row
            created.append(row)

        cleared: list[ScheduleConflict] = []
        now = utcnow()
        for c in existing:
            ident = conflict_identity(c)
            if ident in live:
                continue
            if keys is not None and not (set(ident[2]) & keys or touches_entry_ids(ident[2]) or _details_touch(c, keys)):
                continue
            c.is_resolved = True
            c.resolution_method = cleared_method
            c.resolved_at = now
            cleared.append(c)

        db.flush()
        return created, cleared

    def announce(self, created: Iterable[ScheduleConflict], resolved: Iterable[ScheduleConflict]) -> None:
        for c in created:
            self._events.emit(
                CONFLICT_CREATED,
                {"conflict_id": str(c.id), "version_id": str(c.version_id), "type": str(c.conflict_type), "severity": str(c.severity)},
            )
        for c in resolved:
            self._events.emit(
                CONFLICT_RESOLVED,
                {"conflict_id": str(c.id), "version_id": str(c.version_id), "method": c.resolution_method},
            )

    # ------------------------
    # Scans
    # ------------------------
    def _head(self, version_id: uuid.UUID) -> ScheduleVersion:
        return self._repo.run(lambda db: get_or_404(db, ScheduleVersion, version_id, "version_not_found"))

    def scan(self, version_id: uuid.UUID, *, problem: Problem | None = None) -> list[ScheduleConflict]:
        """Full scan; returns every unresolved conflict of the version afterwards."""

        head = self._head(version_id)
        problem = problem or self._reference.load_problem(version_scope(head))
        with self._locks.hold(version_id):

            def _work(db: Session) -> tuple[list[ScheduleConflict], list[ScheduleConflict], list[ScheduleConflict]]:
                version = get_or_404(db, ScheduleVersion, version_id, "version_not_found", for_update=True)
                created, cleared = self.reconcile(db, version, problem)
                return created, cleared, self._unresolved(db, version_id)

            created, cleared, current = self._repo.run(_work)
        self.announce(created, cleared)
        logger.info("Scan of version %s: %s unresolved (+%s/-%s)", version_id, len(current), len(created), len(cleared))
        return current

    def rescan(self, version_id: uuid.UUID, changed_entry_ids: Iterable[uuid.UUID]) -> list[ScheduleConflict]:
        """Incremental scan around ``changed_entry_ids``; returns only newly created conflicts."""

        changed = {uuid.UUID(str(x)) for x in changed_entry_ids}
        head = self._head(version_id)
        problem = self._reference.load_problem(version_scope(head))
        with self._locks.hold(version_id):

            def _work(db: Session) -> tuple[list[ScheduleConflict], list[ScheduleConflict]]:
                version = get_or_404(db, ScheduleVersion, version_id, "version_not_found", for_update=True)
                return self.reconcile(db, version, problem, changed_ids=changed, cleared_method="cleared_by_adjustment")

            created, cleared = self._repo.run(_work)
        self.announce(created, cleared)
        return created

    def _unresolved(self, db: Session, version_id: uuid.UUID) -> list[ScheduleConflict]:
        q = (
            select(ScheduleConflict)
            .where(ScheduleConflict.version_id == version_id)
            .where(ScheduleConflict.is_resolved.is_(False))
            .order_by(ScheduleConflict.created_at.asc(), ScheduleConflict.id.asc())
        )
        return list(db.execute(q).scalars().all())

    def list_conflicts(
        self,
        version_id: uuid.UUID,
        *,
        conflict_type: str | None = None,
        severity: str | None = None,
        resolved: bool | None = None,
    ) -> list[ScheduleConflict]:
        def _work(db: Session) -> list[ScheduleConflict]:
            get_or_404(db, ScheduleVersion, version_id, "version_not_found")
            q = select(ScheduleConflict).where(ScheduleConflict.version_id == version_id)
            if conflict_type is not None:
                q = q.where(ScheduleConflict.conflict_type == conflict_type)
            if severity is not None:
                q = q.where(ScheduleConflict.severity == severity)
            if resolved is not None:
                q = q.where(ScheduleConflict.is_resolved.is_(bool(resolved)))
            q = q.order_by(ScheduleConflict.created_at.asc(), ScheduleConflict.id.asc())
            return list(db.execute(q).scalars().all())

        return self._repo.run(_work)

    def get(self, conflict_id: uuid.UUID) -> ScheduleConflict:
        return self._repo.run(lambda db: get_or_404(db, ScheduleConflict, conflict_id, "conflict_not_found"))

    # ------------------------
    # Resolution
    # ------------------------
    def _resolve_in_session(
        self,
        db: Session,
        version: ScheduleVersion,
        conflict: ScheduleConflict,
        method: str,
        resolution_data: Mapping[str, Any] | None,
        actor_id: uuid.UUID,
        notes: str | None,
        problem: Problem,
        expected_revision: int | None,
    ) -> tuple[list[ScheduleConflict], list[ScheduleConflict]]:
        if conflict.is_resolved:
            raise ConflictError("already_resolved", "The conflict is already resolved.", details={"conflict_id": str(conflict.id)})
        require_draft(version)
        if expected_revision is not None and int(version.revision) != int(expected_revision):
            raise ConflictError(
                "stale_conflict",
                "The version changed since the conflict was read.",
                details={"expected_revision": expected_revision, "revision": int(version.revision)},
            )
        present = {
            str(x)
            for x in db.execute(select(ScheduleEntry.id).where(ScheduleEntry.version_id == version.id)).scalars().all()
        }
        missing = [x for x in (conflict.affected_entry_ids or []) if str(x) not in present]
        if missing:
            raise ConflictError("stale_conflict", "Affected entries no longer exist.", details={"missing_entry_ids": missing})

        items: list[dict[str, Any]] = []
        applied = dict(resolution_data or {})
        if method == "constraint_relax":
            if str(conflict.severity) == "critical":
                raise ConflictError("cannot_relax_critical", "Critical conflicts must be fixed, not relaxed.")
        elif method == "auto_resolve":
            suggestions = list(conflict.suggested_resolutions or [])
            if not suggestions:
                raise ConflictError("no_suggested_resolution", "No suggested resolution is available.")
            pick = {k: v for k, v in suggestions[0].items() if k != "description"}
            items = [pick]
            applied = pick
        else:
            items = [{**applied, "action": method}]

        conflict.is_resolved = True
        conflict.resolution_method = method
        conflict.resolution_data = applied
        conflict.resolution_notes = notes
        conflict.resolved_by = actor_id
        conflict.resolved_at = utcnow()
        db.flush()

        created: list[ScheduleConflict] = []
        cleared: list[ScheduleConflict] = []
        if items:
            changed, _records, touched = apply_adjustments(
                db,
                version,
                items,
                problem=problem,
                actor_id=actor_id,
                source="conflict_resolution",
                default_reason=notes or f"resolve conflict {conflict.id}",
            )
            created, cleared = self.reconcile(
                db, version, problem, changed_ids=changed, touched=touched, cleared_method="cleared_by_adjustment"
            )
        return created, cleared

    def resolve(
        self,
        conflict_id: uuid.UUID,
        method: str,
        resolution_data: Mapping[str, Any] | None,
        actor_id: uuid.UUID,
        *,
        notes: str | None = None,
        expected_revision: int | None = None,
    ) -> ScheduleConflict:
        if method not in RESOLUTION_METHODS:
            raise ValidationError("invalid_resolution_method", details={"methods": list(RESOLUTION_METHODS)})
        head = self.get(conflict_id)
        if head.is_resolved:
            raise ConflictError("already_resolved", "The conflict is already resolved.", details={"conflict_id": str(conflict_id)})
        version_head = self._head(head.version_id)
        require_draft(version_head)
        problem = self._reference.load_problem(version_scope(version_head))

        with self._locks.hold(head.version_id):

            def _work(db: Session):
                version = get_or_404(db, ScheduleVersion, head.version_id, "version_not_found", for_update=True)
                conflict = get_or_404(db, ScheduleConflict, conflict_id, "conflict_not_found")
                created, cleared = self._resolve_in_session(
                    db, version, conflict, method, resolution_data, actor_id, notes, problem, expected_revision
                )
                return conflict, created, cleared

            conflict, created, cleared = self._repo.run(_work)

        self.announce(created, [conflict, *cleared])
        logger.info("Conflict %s resolved by %s via %s", conflict_id, actor_id, method)
        return conflict

    def bulk_resolve(
        self,
        conflict_ids: list[uuid.UUID],
        method: str,
        actor_id: uuid.UUID,
        *,
        notes: str | None = None,
    ) -> list[ScheduleConflict]:
        """All-or-nothing: every conflict is checked before any is changed."""

        if method not in BULK_METHODS:
            raise ValidationError("invalid_resolution_method", details={"methods": list(BULK_METHODS)})
        ids = list(dict.fromkeys(conflict_ids))
        if not ids:
            raise ValidationError("no_conflicts", "At least one conflict id is required.")

        def _heads(db: Session) -> list[ScheduleConflict]:
            return [get_or_404(db, ScheduleConflict, cid, "conflict_not_found") for cid in ids]

        heads = self._repo.run(_heads)
        version_ids = {c.version_id for c in heads}
        if len(version_ids) != 1:
            raise ValidationError("mixed_versions", "Bulk resolution works on one version at a time.")
        version_id = next(iter(version_ids))
        version_head = self._head(version_id)
        require_draft(version_head)
        problem = self._reference.load_problem(version_scope(version_head))

        with self._locks.hold(version_id):

            def _work(db: Session):
                version = get_or_404(db, ScheduleVersion, version_id, "version_not_found", for_update=True)
                rows = [get_or_404(db, ScheduleConflict, cid, "conflict_not_found") for cid in ids]
                errors = []
                for c in rows:
                    if c.is_resolved:
                        errors.append({"conflict_id": str(c.id), "code": "already_resolved"})
                    elif method == "constraint_relax" and str(c.severity) == "critical":
                        errors.append({"conflict_id": str(c.id), "code": "cannot_relax_critical"})
                    elif method == "auto_resolve" and not c.suggested_resolutions:
                        errors.append({"conflict_id": str(c.id), "code": "no_suggested_resolution"})
                if errors:
                    raise ConflictError("bulk_resolution_rejected", "Some conflicts cannot be resolved.", details={"errors": errors})

                created_all: list[ScheduleConflict] = []
                cleared_all: list[ScheduleConflict] = []
                for c in rows:
                    # An earlier fix in this batch may already have cleared it.
                    if c.is_resolved:
                        continue
                    created, cleared = self._resolve_in_session(
                        db, version, c, method, None, actor_id, notes, problem, None
                    )
                    created_all.extend(created)
                    cleared_all.extend(cleared)
                return rows, created_all, cleared_all

            rows, created, cleared = self._repo.run(_work)

        cleared_ids = {c.id for c in cleared}
        self.announce(created, [c for c in rows if c.id not in cleared_ids] + cleared)
        logger.info("Bulk resolved %s conflicts on version %s via %s", len(rows), version_id, method)
        return rows


def _details_touch(conflict: ScheduleConflict, keys: set[str]) -> bool:
    details = conflict.details or {}
    return any(str(details.get(k)) in keys for k in ("class_id", "teacher_id", "room_id") if details.get(k))

