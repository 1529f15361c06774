from __future__ import annotations

import uuid

import pytest

from core.errors import NotFoundError, ValidationError


def _availability(teacher_id, **overrides):
    data = {
        "scope": "teacher",
        "kind": "TeacherAvailability",
        "is_hard": True,
        "parameters": {"teacher_id": str(teacher_id), "unavailable_slots": [{"day": 0, "period": 0}]},
    }
    data.update(overrides)
    return data


def _add(services, school, data):
    return services.constraints.add(
        school_id=school.scope.school_id,
        academic_year_id=school.scope.academic_year_id,
        data=data,
    )


def test_add_and_snapshot(services, school):
    row = _add(services, school, _availability(school.teachers[0].id, name="Mornings off"))

    assert row.kind == "TeacherAvailability"
    assert row.weight is None
    assert row.parameters["teacher_id"] == str(school.teachers[0].id)

    rules = services.constraints.snapshot(school.scope.school_id, school.scope.academic_year_id)
    assert [r.id for r in rules] == [row.id]
    assert rules[0].params.unavailable_slots[0].day == 0


def test_hard_constraint_with_weight_is_rejected(services, school):
    with pytest.raises(ValidationError) as exc:
        _add(services, school, _availability(school.teachers[0].id, weight=5.0))
    assert exc.value.code == "invalid_constraint"
    assert any("weight" in e for e in exc.value.details["errors"])


def test_soft_constraint_needs_positive_weight(services, school):
    with pytest.raises(ValidationError) as exc:
        _add(services, school, _availability(school.teachers[0].id, is_hard=False, weight=0))
    assert exc.value.code == "invalid_constraint"


def test_parameters_must_match_kind(services, school):
    data = {
        "scope": "global",
        "kind": "ConsecutivePeriodLimit",
        "is_hard": True,
        "parameters": {"max_consecutive": 0},
    }
    with pytest.raises(ValidationError) as exc:
        _add(services, school, data)
    assert exc.value.code == "invalid_constraint_parameters"


def test_unknown_parameter_field_is_rejected(services, school):
    data = _availability(school.teachers[0].id)
    data["parameters"]["colour"] = "blue"
    with pytest.raises(ValidationError) as exc:
        _add(services, school, data)
    assert exc.value.code == "invalid_constraint_parameters"


def test_dangling_reference_is_rejected(services, school):
    with pytest.raises(ValidationError) as exc:
        _add(services, school, _availability(uuid.uuid4()))
    assert any("does not exist" in e for e in exc.value.details["errors"])


def test_scope_must_fit_kind(services, school):
    with pytest.raises(ValidationError):
        _add(services, school, _availability(school.teachers[0].id, scope="room"))


def test_room_capacity_scopes(services, school):
    with pytest.raises(ValidationError):
        _add(
            services,
            school,
            {"scope": "room", "kind": "RoomCapacity", "is_hard": True, "parameters": {"max_occupancy": 20}},
        )
    row = _add(
        services,
        school,
        {"scope": "global", "kind": "RoomCapacity", "is_hard": True, "parameters": {"max_occupancy": 20}},
    )
    assert row.parameters["room_id"] is None


def test_update_bumps_generation_and_refreshes_snapshot(services, school):
    store = services.constraints
    key = (school.scope.school_id, school.scope.academic_year_id)
    row = _add(services, school, _availability(school.teachers[0].id))
    before = store.generation(*key)
    first = store.snapshot(*key)

    updated = store.update(row.id, {"is_hard": False, "weight": 3.0})

    assert updated.is_hard is False
    assert updated.weight == 3.0
    assert store.generation(*key) == before + 1
    second = store.snapshot(*key)
    assert first[0].is_hard is True
    assert second[0].is_hard is False
    assert second[0].penalty_weight == 3.0


def test_update_rejects_unknown_fields(services, school):
    row = _add(services, school, _availability(school.teachers[0].id))
    with pytest.raises(ValidationError):
        services.constraints.update(row.id, {"kind": "RoomCapacity"})


def test_inactive_constraints_leave_the_snapshot(services, school):
    store = services.constraints
    key = (school.scope.school_id, school.scope.academic_year_id)
    row = _add(services, school, _availability(school.teachers[0].id))
    store.update(row.id, {"is_active": False})

    assert store.snapshot(*key) == ()
    listed = store.list_active(school_id=key[0], academic_year_id=key[1], include_inactive=True)
    assert [r.id for r in listed] == [row.id]


def test_remove(services, school):
    store = services.constraints
    row = _add(services, school, _availability(school.teachers[0].id))
    store.remove(row.id)

    assert store.snapshot(school.scope.school_id, school.scope.academic_year_id) == ()
    with pytest.raises(NotFoundError):
        store.get(row.id)


def test_other_school_cannot_read_constraint(services, school):
    row = _add(services, school, _availability(school.teachers[0].id))
    with pytest.raises(NotFoundError):
        services.constraints.get(row.id, school_id=uuid.uuid4())
