from __future__ import annotations

import uuid

import pytest

from conftest import entry
from core.errors import ConflictError, ValidationError
from core.events import CONFLICT_CREATED, CONFLICT_RESOLVED
from services.conflict_detector import conflict_identity, soft_severity


def _room_clash_version(services, school):
    """7A maths and 7B english both booked into R0 on Monday first period."""
    entries = [
        entry(school, klass=0, subject=0, teacher=0, room=0, day=0, period=0),
        entry(school, klass=1, subject=1, teacher=1, room=0, day=0, period=0),
    ]
    version = services.versions.create_draft(school.scope, entries, name="clash")
    rows = services.versions.entries(version.id)
    return version, rows


def test_scan_stores_room_conflict(services, school, events):
    version, rows = _room_clash_version(services, school)

    found = services.detector.scan(version.id)

    assert len(found) == 1
    conflict = found[0]
    assert conflict.conflict_type == "room_conflict"
    assert conflict.severity == "critical"
    assert sorted(conflict.affected_entry_ids) == sorted(str(r.id) for r in rows)
    assert conflict.suggested_resolutions
    assert len(events.named(CONFLICT_CREATED)) == 1


def test_rescan_is_idempotent(services, school):
    version, _rows = _room_clash_version(services, school)
    first = services.detector.scan(version.id)
    second = services.detector.scan(version.id)
    assert [c.id for c in first] == [c.id for c in second]


def test_resolve_by_move_clears_conflict(services, school, events):
    version, rows = _room_clash_version(services, school)
    conflict = services.detector.scan(version.id)[0]
    actor = uuid.uuid4()

    resolved = services.detector.resolve(
        conflict.id,
        "move",
        {"entry_id": str(rows[1].id), "new_slot": {"day": 1, "period": 0}},
        actor,
        notes="moved english",
    )

    assert resolved.is_resolved
    assert resolved.resolution_method == "move"
    assert resolved.resolved_by == actor
    assert services.detector.list_conflicts(version.id, resolved=False) == []
    moved = {str(r.id): r for r in services.versions.entries(version.id)}[str(rows[1].id)]
    assert (moved.day_of_week, moved.period) == (1, 0)
    assert events.named(CONFLICT_RESOLVED)

    history = services.adjustments.history(version.id)
    assert [h.source for h in history] == ["conflict_resolution"]


def test_second_resolve_reports_already_resolved(services, school):
    version, rows = _room_clash_version(services, school)
    conflict = services.detector.scan(version.id)[0]
    actor = uuid.uuid4()
    services.detector.resolve(
        conflict.id, "move", {"entry_id": str(rows[1].id), "new_slot": {"day": 2, "period": 1}}, actor
    )

    with pytest.raises(ConflictError) as exc:
        services.detector.resolve(conflict.id, "cancel", {"entry_id": str(rows[0].id)}, uuid.uuid4())

    assert exc.value.code == "already_resolved"
    after = services.detector.get(conflict.id)
    assert after.resolution_method == "move"
    assert after.resolved_by == actor
    assert len(services.versions.entries(version.id)) == 2


def test_auto_resolve_applies_first_suggestion(services, school):
    version, _rows = _room_clash_version(services, school)
    conflict = services.detector.scan(version.id)[0]
    first = conflict.suggested_resolutions[0]

    resolved = services.detector.resolve(conflict.id, "auto_resolve", None, uuid.uuid4())

    assert resolved.resolution_method == "auto_resolve"
    assert resolved.resolution_data["action"] == first["action"]
    assert services.detector.list_conflicts(version.id, resolved=False) == []


def test_critical_conflicts_cannot_be_relaxed(services, school):
    version, _rows = _room_clash_version(services, school)
    conflict = services.detector.scan(version.id)[0]
    with pytest.raises(ConflictError) as exc:
        services.detector.resolve(conflict.id, "constraint_relax", None, uuid.uuid4())
    assert exc.value.code == "cannot_relax_critical"
    assert services.detector.get(conflict.id).is_resolved is False


def test_relaxed_conflict_stays_closed_across_scans(services, school):
    klass = school.classes[0].id
    services.constraints.add(
        school_id=school.scope.school_id,
        academic_year_id=school.scope.academic_year_id,
        data={
            "scope": "class",
            "kind": "ConsecutivePeriodLimit",
            "is_hard": False,
            "weight": 3,
            "parameters": {"class_id": str(klass), "max_consecutive": 1},
        },
    )
    version = services.versions.create_draft(
        school.scope,
        [
            entry(school, klass=0, subject=0, teacher=0, room=0, day=0, period=0),
            entry(school, klass=0, subject=1, teacher=1, room=1, day=0, period=1),
        ],
        name="back to back",
    )
    soft = services.detector.list_conflicts(version.id, resolved=False)
    assert [c.severity != "critical" for c in soft] == [True]

    services.detector.resolve(soft[0].id, "constraint_relax", None, uuid.uuid4(), notes="accepted for now")

    assert services.detector.scan(version.id) == []
    rows = services.versions.entries(version.id)
    assert services.detector.rescan(version.id, [r.id for r in rows]) == []
    relaxed = services.detector.get(soft[0].id)
    assert relaxed.is_resolved is True
    assert relaxed.resolution_method == "constraint_relax"
    assert len(services.detector.list_conflicts(version.id)) == 1


def test_unknown_method_is_rejected(services, school):
    version, _rows = _room_clash_version(services, school)
    conflict = services.detector.scan(version.id)[0]
    with pytest.raises(ValidationError):
        services.detector.resolve(conflict.id, "ignore", None, uuid.uuid4())


def test_bulk_resolve_is_all_or_nothing(services, school):
    version, _rows = _room_clash_version(services, school)
    conflict = services.detector.scan(version.id)[0]

    with pytest.raises(ConflictError) as exc:
        services.detector.bulk_resolve([conflict.id], "constraint_relax", uuid.uuid4())

    assert exc.value.code == "bulk_resolution_rejected"
    assert services.detector.get(conflict.id).is_resolved is False

    rows = services.detector.bulk_resolve([conflict.id], "auto_resolve", uuid.uuid4())
    assert [r.is_resolved for r in rows] == [True]


def test_conflict_free_swap_leaves_other_conflicts_alone(services, school):
    entries = [
        entry(school, klass=0, subject=0, teacher=0, room=0, day=0, period=0),
        entry(school, klass=0, subject=1, teacher=1, room=1, day=0, period=1),
        # Unrelated teacher double booking of T2 on Thursday.
        entry(school, klass=1, subject=2, teacher=2, room=0, day=3, period=0),
        entry(school, klass=0, subject=2, teacher=2, room=1, day=3, period=0),
    ]
    version = services.versions.create_draft(school.scope, entries, name="swap")
    rows = services.versions.entries(version.id)
    before = services.detector.scan(version.id)
    assert [c.conflict_type for c in before] == ["teacher_double_booking"]

    result = services.adjustments.adjust(
        version.id,
        [{"action": "swap", "entry_id": str(rows[0].id), "with_entry_id": str(rows[1].id)}],
        uuid.uuid4(),
    )

    assert result.new_conflicts == []
    assert result.cleared_conflicts == []
    assert result.revision == 1
    assert services.detector.rescan(version.id, [rows[0].id, rows[1].id]) == []
    after = services.detector.list_conflicts(version.id, resolved=False)
    assert [c.id for c in after] == [c.id for c in before]
    assert [conflict_identity(c) for c in after] == [conflict_identity(c) for c in before]

    swapped = {r.id: r for r in services.versions.entries(version.id)}
    assert (swapped[rows[0].id].day_of_week, swapped[rows[0].id].period) == (0, 1)
    assert swapped[rows[0].id].room_id == rows[1].room_id


def test_adjustment_creating_clash_is_tracked(services, school):
    entries = [
        entry(school, klass=0, subject=0, teacher=0, room=0, day=0, period=0),
        entry(school, klass=1, subject=1, teacher=1, room=1, day=1, period=0),
    ]
    version = services.versions.create_draft(school.scope, entries, name="move")
    rows = services.versions.entries(version.id)
    assert services.detector.scan(version.id) == []

    result = services.adjustments.adjust(
        version.id,
        [{"action": "move", "entry_id": str(rows[1].id), "new_slot": {"day": 0, "period": 0}, "new_room_id": str(rows[0].room_id)}],
        uuid.uuid4(),
    )

    assert [c.conflict_type for c in result.new_conflicts] == ["room_conflict"]


def test_validated_adjustment_rolls_back_on_critical_conflict(services, school):
    entries = [
        entry(school, klass=0, subject=0, teacher=0, room=0, day=0, period=0),
        entry(school, klass=1, subject=1, teacher=0, room=1, day=1, period=0),
    ]
    version = services.versions.create_draft(school.scope, entries, name="strict")
    rows = services.versions.entries(version.id)

    with pytest.raises(ConflictError) as exc:
        services.adjustments.adjust(
            version.id,
            [{"action": "move", "entry_id": str(rows[1].id), "new_slot": {"day": 0, "period": 0}}],
            uuid.uuid4(),
            validate_constraints=True,
        )

    assert exc.value.code == "adjustment_creates_conflicts"
    unchanged = {r.id: r for r in services.versions.entries(version.id)}[rows[1].id]
    assert (unchanged.day_of_week, unchanged.period) == (1, 0)
    assert services.versions.get(version.id).revision == 0


def test_stale_revision_is_rejected(services, school):
    version, rows = _room_clash_version(services, school)
    with pytest.raises(ConflictError) as exc:
        services.adjustments.adjust(
            version.id,
            [{"action": "cancel", "entry_id": str(rows[0].id)}],
            uuid.uuid4(),
            expected_revision=3,
        )
    assert exc.value.code == "stale_version"


def test_soft_severity_bands():
    assert soft_severity(1) == "low"
    assert soft_severity(5) == "medium"
    assert soft_severity(25) == "high"
