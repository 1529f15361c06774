from __future__ import annotations

import uuid

import pytest

from conftest import entry
from core.errors import NotFoundError, ValidationError
from models import GenerationHint
from services.optimization import suggestion_priority


def _gappy_version(services, school):
    """T0 teaches 7A on Monday periods 0 and 3, leaving a two-period hole."""
    entries = [
        entry(school, klass=0, subject=0, teacher=0, room=0, day=0, period=0),
        entry(school, klass=0, subject=0, teacher=0, room=0, day=0, period=3, occurrence=1),
        entry(school, klass=1, subject=1, teacher=1, room=1, day=1, period=0),
    ]
    version = services.versions.create_draft(school.scope, entries, name="gappy")
    services.detector.scan(version.id)
    return version


def test_metrics_shape(services, school):
    version = _gappy_version(services, school)

    m = services.optimization.metrics(version.id)

    assert m["version_id"] == str(version.id)
    assert m["hard_violations"] == 0
    assert 0 < m["optimization_score"] <= 100
    loads = {t["teacher_id"]: t["total_periods"] for t in m["teacher_workload"]["teachers"]}
    assert loads[str(school.teachers[0].id)] == 2
    assert m["gaps"]["teacher_total"] >= 2
    assert m["room_utilization"]["rooms"]


def test_gap_suggestion_is_verified_and_side_effect_free(services, school):
    version = _gappy_version(services, school)

    found = services.optimization.suggest(version.id, type="minimize_gaps")

    assert found
    best = found[0]
    assert best.type == "minimize_gaps"
    assert best.estimated_improvement > 0
    assert best.adjustments[0]["action"] == "move"
    # Suggesting never changes the schedule.
    assert services.versions.get(version.id).revision == 0
    again = services.optimization.suggest(version.id, type="minimize_gaps")
    assert [s.id for s in again] == [s.id for s in found]


def test_preview_does_not_mutate(services, school):
    version = _gappy_version(services, school)
    pick = services.optimization.suggest(version.id, type="minimize_gaps")[0]

    out = services.optimization.apply(version.id, [pick.id], "preview", uuid.uuid4())

    assert out["mode"] == "preview"
    assert out["diff"]
    assert out["projected_penalty"] < services.versions.get(version.id).penalty
    assert services.versions.get(version.id).revision == 0


def test_apply_immediately_goes_through_adjustments(services, school):
    version = _gappy_version(services, school)
    pick = services.optimization.suggest(version.id, type="minimize_gaps")[0]

    out = services.optimization.apply(version.id, [pick.id], "immediate", uuid.uuid4())

    assert out["revision"] == 1
    assert out["new_conflict_ids"] == []
    history = services.adjustments.history(version.id)
    assert {h.source for h in history} == {"optimization"}
    # The suggestion is gone once the schedule changed.
    with pytest.raises(NotFoundError) as exc:
        services.optimization.apply(version.id, [pick.id], "immediate", uuid.uuid4())
    assert exc.value.code == "suggestion_not_found"


def test_apply_for_next_generation_stores_hint(services, school):
    version = _gappy_version(services, school)
    pick = services.optimization.suggest(version.id, type="minimize_gaps")[0]

    out = services.optimization.apply(version.id, [pick.id], "next_generation", uuid.uuid4())

    hint = services.repo.run(lambda db: db.get(GenerationHint, uuid.UUID(out["hint_id"])))
    assert hint.version_id == version.id
    assert hint.consumed_by_job_id is None
    assert hint.placements
    assert services.versions.get(version.id).revision == 0


def test_apply_rejects_unknown_mode(services, school):
    version = _gappy_version(services, school)
    with pytest.raises(ValidationError):
        services.optimization.apply(version.id, [uuid.uuid4()], "later", uuid.uuid4())


def test_suggest_rejects_unknown_type(services, school):
    version = _gappy_version(services, school)
    with pytest.raises(ValidationError):
        services.optimization.suggest(version.id, type="magic")


def test_compare_ranks_versions(services, school):
    gappy = _gappy_version(services, school)
    tidy = services.versions.create_draft(
        school.scope,
        [
            entry(school, klass=0, subject=0, teacher=0, room=0, day=0, period=0),
            entry(school, klass=0, subject=0, teacher=0, room=0, day=1, period=0, occurrence=1),
            entry(school, klass=1, subject=1, teacher=1, room=1, day=1, period=0),
        ],
        name="tidy",
    )

    out = services.optimization.compare([gappy.id, tidy.id], ["optimization_score"])

    assert out["criteria"] == ["optimization_score"]
    assert out["best_version_id"] == str(tidy.id)
    assert out["ranking"] == [str(tidy.id), str(gappy.id)]
    assert {v["version_id"] for v in out["versions"]} == {str(gappy.id), str(tidy.id)}


def test_compare_validation(services, school):
    version = _gappy_version(services, school)
    with pytest.raises(ValidationError) as exc:
        services.optimization.compare([version.id])
    assert exc.value.code == "invalid_comparison"

    other = _gappy_version(services, school)
    with pytest.raises(ValidationError) as exc:
        services.optimization.compare([version.id, other.id], ["beauty"])
    assert exc.value.code == "invalid_criteria"

    with pytest.raises(ValidationError) as exc:
        services.optimization.compare([version.id, other.id], None, {"optimization_score": -1})
    assert exc.value.code == "invalid_weightings"


def test_priority_bands():
    assert suggestion_priority(12) == "high"
    assert suggestion_priority(3) == "medium"
    assert suggestion_priority(0.5) == "low"
