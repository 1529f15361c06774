from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import ConflictError, NotFoundError, ValidationError
from models import AdjustmentRecord, Room, ScheduleConflict, ScheduleEntry, ScheduleVersion, Teacher
from services.locks import VersionLocks
from services.repository import Repository, Scope, entry_snapshot, get_or_404, load_entries
from solver.problem import Problem, Slot

if TYPE_CHECKING:
    from services.conflict_detector import ConflictDetector
    from services.reference_data import ReferenceDataService


logger = logging.getLogger(__name__)

ACTIONS = ("swap", "move", "cancel", "reschedule")
SOURCES = ("manual", "conflict_resolution", "optimization")


@dataclass
class AdjustmentResult:
    version_id: uuid.UUID
    revision: int
    records: list[AdjustmentRecord]
    new_conflicts: list[ScheduleConflict] = field(default_factory=list)
    cleared_conflicts: list[ScheduleConflict] = field(default_factory=list)


def version_scope(version: ScheduleVersion) -> Scope:
    return Scope(version.school_id, version.academic_year_id, version.term_id)


def require_draft(version: ScheduleVersion) -> None:
    if str(version.status) != "draft":
        raise ConflictError(
            "version_not_draft",
            "Only draft versions can be changed.",
            details={"version_id": str(version.id), "status": str(version.status)},
        )


def _as_uuid(value: Any, field_name: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError("invalid_adjustment", f"{field_name} is not a valid id.") from exc


def _as_slot(value: Any, problem: Problem) -> Slot:
    if not isinstance(value, Mapping) or "day" not in value or "period" not in value:
        raise ValidationError("invalid_adjustment", "new_slot needs day and period.")
    slot = Slot(int(value["day"]), int(value["period"]))
    if slot not in problem.grid:
        raise ValidationError("slot_not_in_grid", details=slot.as_dict())
    return slot


def _siblings(entries: Iterable[ScheduleEntry], entry: ScheduleEntry) -> list[ScheduleEntry]:
    """The entry plus joint-lesson partners sitting in the same slot."""
    return [
        e
        for e in entries
        if e.class_id == entry.class_id
        and e.subject_id == entry.subject_id
        and e.occurrence == entry.occurrence
        and e.day_of_week == entry.day_of_week
        and e.period == entry.period
    ]


def apply_adjustments(
    db: Session,
    version: ScheduleVersion,
    items: list[Mapping[str, Any]],
    *,
    problem: Problem,
    actor_id: uuid.UUID,
    source: str,
    default_reason: str,
) -> tuple[set[uuid.UUID], list[AdjustmentRecord], list[dict[str, Any]]]:
    """Apply adjustments to a draft inside the caller's transaction.

    Slot changes move a joint lesson's partner entries too; room and teacher
    changes touch only the named entry. Returns (changed entry ids, audit
    records, before/after snapshots of the changed entries).
    """

    require_draft(version)
    if not items:
        raise ValidationError("invalid_adjustment", "At least one adjustment is required.")

    entries = load_entries(db, version.id)
    by_id = {e.id: e for e in entries}
    changes: list[tuple[str, ScheduleEntry, dict[str, Any] | None, str]] = []
    changed: set[uuid.UUID] = set()
    touched: list[dict[str, Any]] = []

    def _entry(value: Any, name: str) -> ScheduleEntry:
        eid = _as_uuid(value, name)
        e = by_id.get(eid)
        if e is None:
            raise NotFoundError("entry_not_found", details={"entry_id": str(eid), "version_id": str(version.id)})
        return e

    def _room(value: Any) -> uuid.UUID:
        rid = _as_uuid(value, "new_room_id")
        room = db.get(Room, rid)
        if room is None or room.school_id != version.school_id:
            raise NotFoundError("room_not_found", details={"id": str(rid)})
        return rid

    def _teacher(value: Any) -> uuid.UUID:
        tid = _as_uuid(value, "new_teacher_id")
        teacher = db.get(Teacher, tid)
        if teacher is None or teacher.school_id != version.school_id:
            raise NotFoundError("teacher_not_found", details={"id": str(tid)})
        return tid

    def _set_slot(group: list[ScheduleEntry], slot: Slot, action: str, reason: str) -> None:
        for e in group:
            before = entry_snapshot(e)
            e.day_of_week = slot.day
            e.period = slot.period
            changes.append((action, e, before, reason))

    for raw in items:
        action = str(raw.get("action") or "")
        if action not in ACTIONS:
            raise ValidationError("invalid_adjustment", f"Unknown action '{action}'.", details={"actions": list(ACTIONS)})
        reason = str(raw.get("reason") or default_reason).strip() or default_reason
        entry = _entry(raw.get("entry_id"), "entry_id")

        if action == "swap":
            other = _entry(raw.get("with_entry_id"), "with_entry_id")
            if other.id == entry.id:
                raise ValidationError("invalid_adjustment", "Cannot swap an entry with itself.")
            slot_a = Slot(int(entry.day_of_week), int(entry.period))
            slot_b = Slot(int(other.day_of_week), int(other.period))
            group_a = _siblings(entries, entry)
            group_b = _siblings(entries, other)
            before_a, before_b = entry_snapshot(entry), entry_snapshot(other)
            _set_slot([e for e in group_a if e.id != entry.id], slot_b, action, reason)
            _set_slot([e for e in group_b if e.id != other.id], slot_a, action, reason)
            entry.day_of_week, entry.period = slot_b.day, slot_b.period
            other.day_of_week, other.period = slot_a.day, slot_a.period
            # The two named entries trade rooms so neither room is double-booked by the swap itself.
            entry.room_id, other.room_id = other.room_id, entry.room_id
            changes.append((action, entry, before_a, reason))
            changes.append((action, other, before_b, reason))

        elif action == "move":
            if raw.get("new_slot") is None:
                raise ValidationError("invalid_adjustment", "move requires new_slot.")
            slot = _as_slot(raw["new_slot"], problem)
            new_room = _room(raw["new_room_id"]) if raw.get("new_room_id") else None
            group = _siblings(entries, entry)
            before = entry_snapshot(entry)
            _set_slot([e for e in group if e.id != entry.id], slot, action, reason)
            entry.day_of_week, entry.period = slot.day, slot.period
            if new_room is not None:
                entry.room_id = new_room
            changes.append((action, entry, before, reason))

        elif action == "reschedule":
            if not any(raw.get(k) for k in ("new_slot", "new_room_id", "new_teacher_id")):
                raise ValidationError("invalid_adjustment", "reschedule needs new_slot, new_room_id or new_teacher_id.")
            before = entry_snapshot(entry)
            if raw.get("new_slot") is not None:
                slot = _as_slot(raw["new_slot"], problem)
                group = _siblings(entries, entry)
                _set_slot([e for e in group if e.id != entry.id], slot, action, reason)
                entry.day_of_week, entry.period = slot.day, slot.period
            if raw.get("new_room_id"):
                entry.room_id = _room(raw["new_room_id"])
            if raw.get("new_teacher_id"):
                entry.teacher_id = _teacher(raw["new_teacher_id"])
            changes.append((action, entry, before, reason))

        else:  # cancel
            before = entry_snapshot(entry)
            changes.append((action, entry, before, reason))
            entries = [e for e in entries if e.id != entry.id]
            del by_id[entry.id]
            db.delete(entry)

    version.revision = int(version.revision or 0) + 1
    records: list[AdjustmentRecord] = []
    for action, e, before, reason in changes:
        after = None if action == "cancel" else entry_snapshot(e)
        changed.add(e.id)
        touched.append({"before": before, "after": after})
        rec = AdjustmentRecord(
            version_id=version.id,
            actor_id=actor_id,
            action=action,
            entry_id=e.id,
            before=before,
            after=after,
            reason=reason,
            source=source,
            revision=version.revision,
        )
        db.add(rec)
        records.append(rec)
    db.flush()
    return changed, records, touched


class AdjustmentService:
    """Manual edits of a draft: the single writer path for entry mutations."""

    def __init__(
        self,
        repo: Repository,
        reference: "ReferenceDataService",
        detector: "ConflictDetector",
        locks: VersionLocks,
    ):
        self._repo = repo
        self._reference = reference
        self._detector = detector
        self._locks = locks

    def adjust(
        self,
        version_id: uuid.UUID,
        adjustments: list[Mapping[str, Any]],
        actor_id: uuid.UUID,
        *,
        source: str = "manual",
        validate_constraints: bool = False,
        expected_revision: int | None = None,
        school_id: uuid.UUID | None = None,
    ) -> AdjustmentResult:
        if source not in SOURCES:
            raise ValidationError("invalid_adjustment", f"Unknown source '{source}'.")
        head = self._repo.run(lambda db: get_or_404(db, ScheduleVersion, version_id, "version_not_found"))
        if school_id is not None and head.school_id != school_id:
            raise NotFoundError("version_not_found", details={"id": str(version_id)})
        require_draft(head)
        problem = self._reference.load_problem(version_scope(head))

        with self._locks.hold(version_id):

            def _work(db: Session) -> AdjustmentResult:
                version = get_or_404(db, ScheduleVersion, version_id, "version_not_found", for_update=True)
                if expected_revision is not None and int(version.revision) != int(expected_revision):
                    raise ConflictError(
                        "stale_version",
                        "The version changed since it was read.",
                        details={"expected_revision": expected_revision, "revision": int(version.revision)},
                    )
                changed, records, touched = apply_adjustments(
                    db,
                    version,
                    list(adjustments),
                    problem=problem,
                    actor_id=actor_id,
                    source=source,
                    default_reason="manual adjustment" if source == "manual" else source.replace("_", " "),
                )
                created, cleared = self._detector.reconcile(
                    db, version, problem, changed_ids=changed, touched=touched, cleared_method="cleared_by_adjustment"
                )
                if validate_constraints:
                    critical = [c for c in created if str(c.severity) == "critical"]
                    if critical:
                        raise ConflictError(
                            "adjustment_creates_conflicts",
                            "The adjustment would introduce critical conflicts.",
                            details={"conflicts": [c.description for c in critical]},
                        )
                return AdjustmentResult(
                    version_id=version.id,
                    revision=int(version.revision),
                    records=records,
                    new_conflicts=created,
                    cleared_conflicts=cleared,
                )

            result = self._repo.run(_work)

        self._detector.announce(result.new_conflicts, result.cleared_conflicts)
        logger.info(
            "Version %s adjusted by %s (%s records, revision %s, +%s/-%s conflicts)",
            version_id,
            actor_id,
            len(result.records),
            result.revision,
            len(result.new_conflicts),
            len(result.cleared_conflicts),
        )
        return result

    def history(
        self,
        version_id: uuid.UUID,
        *,
        action: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AdjustmentRecord]:
        def _work(db: Session) -> list[AdjustmentRecord]:
            get_or_404(db, ScheduleVersion, version_id, "version_not_found")
            q = select(AdjustmentRecord).where(AdjustmentRecord.version_id == version_id)
            if action is not None:
                q = q.where(AdjustmentRecord.action == action)
            if since is not None:
                q = q.where(AdjustmentRecord.created_at >= since)
            if until is not None:
                q = q.where(AdjustmentRecord.created_at <= until)
            q = q.order_by(AdjustmentRecord.revision.asc(), AdjustmentRecord.created_at.asc())
            return list(db.execute(q).scalars().all())

        return self._repo.run(_work)
