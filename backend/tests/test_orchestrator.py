from __future__ import annotations

import threading
import uuid
from collections import Counter

import pytest

from conftest import EventLog, seed_school, wait_for_job
from core.errors import ConflictError, ValidationError
from core.events import JOB_CANCELLED, JOB_COMPLETED, JOB_FAILED
from services.orchestrator import GenerationParameters
from services.repository import Scope
from solver.engine import solve


FAST = {"seed": 11, "time_budget_seconds": 30, "max_iterations": 300}


class GatedSolve:
    """Real solver that waits at the start until the test opens the gate."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.gate = threading.Event()

    def __call__(self, problem, options=None, *, progress=None, cancel_event=None):
        self.entered.set()
        self.gate.wait(10)
        return solve(problem, options, progress=progress, cancel_event=cancel_event)


def test_job_completes_with_conflict_free_version(services, school, events):
    actor = uuid.uuid4()
    job = services.orchestrator.submit(school.scope, FAST, actor)
    assert job.state == "pending"

    done = wait_for_job(services, job.id)

    assert done.state == "completed"
    assert done.progress == 1.0
    assert done.stats["lessons"] == 14
    version = services.versions.get(done.result_version_id)
    assert version.status == "draft"
    assert version.parent_job_id == job.id
    assert version.unsatisfied_hard_constraints == []
    rows = services.versions.entries(version.id)
    assert len(rows) == 14
    assert max(Counter((r.teacher_id, r.day_of_week, r.period) for r in rows).values()) == 1
    assert max(Counter((r.room_id, r.day_of_week, r.period) for r in rows).values()) == 1
    assert services.detector.list_conflicts(version.id, severity="critical") == []
    completed = events.named(JOB_COMPLETED)
    assert completed and completed[0]["version_id"] == str(version.id)


def test_seed_is_recorded_when_missing(services, school):
    job = services.orchestrator.submit(school.scope, {"time_budget_seconds": 30, "max_iterations": 50}, None)
    assert isinstance(job.seed, int)
    assert job.parameters["seed"] == job.seed
    wait_for_job(services, job.id)


def test_second_submit_while_running_is_rejected(make_services, scope):
    gated = GatedSolve()
    svc = make_services(solve_fn=gated)
    seed_school(svc, scope)
    first = svc.orchestrator.submit(scope, FAST, uuid.uuid4())
    assert gated.entered.wait(10)

    with pytest.raises(ConflictError) as exc:
        svc.orchestrator.submit(scope, FAST, uuid.uuid4())

    assert exc.value.code == "job_already_running"
    assert exc.value.details["job_id"] == str(first.id)
    gated.gate.set()
    assert wait_for_job(svc, first.id).state == "completed"

    again = svc.orchestrator.submit(scope, FAST, uuid.uuid4())
    assert wait_for_job(svc, again.id).state == "completed"


def test_cancel_pending_job_never_runs(make_services, scope):
    gated = GatedSolve()
    svc = make_services(workers=1, solve_fn=gated)
    log = EventLog()
    svc.events.subscribe(JOB_CANCELLED, log)
    seed_school(svc, scope)
    other = Scope(scope.school_id, scope.academic_year_id, uuid.uuid4())
    svc.reference.create_time_grid(other, [{"day": d, "period": p} for d in range(5) for p in range(4)])

    busy = svc.orchestrator.submit(scope, FAST, None)
    assert gated.entered.wait(10)
    waiting = svc.orchestrator.submit(other, FAST, None)
    assert svc.orchestrator.get_status(waiting.id).state == "pending"

    cancelled = svc.orchestrator.cancel(waiting.id)

    assert cancelled.state == "cancelled"
    assert cancelled.started_at is None
    assert log.named(JOB_CANCELLED)[0]["job_id"] == str(waiting.id)

    gated.gate.set()
    assert wait_for_job(svc, busy.id).state == "completed"
    assert svc.orchestrator.get_status(waiting.id).state == "cancelled"
    # Terminal jobs are left as they are.
    assert svc.orchestrator.cancel(waiting.id).state == "cancelled"
    assert svc.orchestrator.cancel(busy.id).state == "completed"


def test_cancel_running_job(make_services, scope):
    entered = threading.Event()

    def waits_for_cancel(problem, options=None, *, progress=None, cancel_event=None):
        entered.set()
        cancel_event.wait(10)
        return solve(problem, options, progress=progress, cancel_event=cancel_event)

    svc = make_services(solve_fn=waits_for_cancel)
    seed_school(svc, scope)
    job = svc.orchestrator.submit(scope, FAST, None)
    assert entered.wait(10)

    svc.orchestrator.cancel(job.id)

    done = wait_for_job(svc, job.id)
    assert done.state == "cancelled"
    assert done.result_version_id is None
    assert svc.versions.list_versions(scope) == []


def test_crashing_solve_fails_only_its_job(make_services, scope):
    calls: list[int] = []

    def flaky(problem, options=None, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("solver exploded")
        return solve(problem, options, **kwargs)

    svc = make_services(solve_fn=flaky)
    log = EventLog()
    svc.events.subscribe(JOB_FAILED, log)
    seed_school(svc, scope)

    failed = wait_for_job(svc, svc.orchestrator.submit(scope, FAST, None).id)

    assert failed.state == "failed"
    assert failed.error == "internal_error"
    assert failed.error_ref
    assert log.named(JOB_FAILED)[0]["error_ref"] == failed.error_ref

    ok = wait_for_job(svc, svc.orchestrator.submit(scope, FAST, None).id)
    assert ok.state == "completed"


def test_failed_conflict_scan_leaves_no_draft(services, school, monkeypatch):
    def broken_reconcile(*args, **kwargs):
        raise RuntimeError("detector exploded")

    monkeypatch.setattr(services.detector, "reconcile", broken_reconcile)

    done = wait_for_job(services, services.orchestrator.submit(school.scope, FAST, None).id)

    assert done.state == "failed"
    assert done.error == "internal_error"
    assert done.result_version_id is None
    assert services.versions.list_versions(school.scope) == []


def test_empty_time_grid_is_rejected_at_submit(services, school):
    no_grid = Scope(school.scope.school_id, school.scope.academic_year_id, uuid.uuid4())
    with pytest.raises(ValidationError) as exc:
        services.orchestrator.submit(no_grid, FAST, None)
    assert exc.value.code == "empty_time_grid"
    assert services.orchestrator.list_jobs(no_grid) == []


def test_invalid_parameters_are_rejected(services, school):
    with pytest.raises(ValidationError) as exc:
        services.orchestrator.submit(school.scope, {"time_budget_seconds": 100000}, None)
    assert exc.value.code == "invalid_generation_parameters"

    with pytest.raises(ValidationError):
        services.orchestrator.submit(school.scope, {"colour": "blue"}, None)

    with pytest.raises(ValidationError) as exc:
        services.orchestrator.submit(school.scope, {"exclude_slots": [{"day": 6, "period": 0}]}, None)
    assert exc.value.code == "slot_not_in_grid"


def test_max_periods_per_day_limits_the_grid(services, school):
    job = services.orchestrator.submit(school.scope, {**FAST, "max_periods_per_day": 3}, None)
    done = wait_for_job(services, job.id)
    rows = services.versions.entries(done.result_version_id)
    assert all(r.period < 3 for r in rows)


def test_regenerate_keeps_fixed_entries(services, school):
    base_job = wait_for_job(services, services.orchestrator.submit(school.scope, FAST, None).id)
    base_rows = services.versions.entries(base_job.result_version_id)
    pinned = base_rows[0]

    with pytest.raises(ValidationError) as exc:
        services.orchestrator.regenerate(base_job.result_version_id, {}, "  ", None)
    assert exc.value.code == "regeneration_reason_required"

    job = services.orchestrator.regenerate(
        base_job.result_version_id,
        {"fixed_entry_ids": [str(pinned.id)], "exclude_slots": [{"day": 4, "period": 3}]},
        "teacher on leave friday afternoon",
        uuid.uuid4(),
    )
    assert job.base_version_id == base_job.result_version_id
    assert job.parameters["reason"] == "teacher on leave friday afternoon"

    done = wait_for_job(services, job.id)
    assert done.state == "completed"
    rows = services.versions.entries(done.result_version_id)
    keys = {(r.class_id, r.subject_id, r.occurrence, r.teacher_id, r.room_id, r.day_of_week, r.period) for r in rows}
    assert (
        pinned.class_id,
        pinned.subject_id,
        pinned.occurrence,
        pinned.teacher_id,
        pinned.room_id,
        pinned.day_of_week,
        pinned.period,
    ) in keys
    if (pinned.day_of_week, pinned.period) != (4, 3):
        assert all((r.day_of_week, r.period) != (4, 3) for r in rows)
    assert services.versions.get(done.result_version_id).base_version_id == base_job.result_version_id


def test_regenerate_rejects_unknown_entries(services, school):
    base_job = wait_for_job(services, services.orchestrator.submit(school.scope, FAST, None).id)
    with pytest.raises(ValidationError) as exc:
        services.orchestrator.regenerate(
            base_job.result_version_id, {"fixed_entry_ids": [str(uuid.uuid4())]}, "rework", None
        )
    assert exc.value.code == "unknown_fixed_entries"


def test_parameters_round_trip_defaults():
    params = GenerationParameters.from_mapping({"seed": 3, "preferences": {"minimize_gaps": False}})
    assert params.seed == 3
    assert params.preferences.minimize_gaps is False
    assert params.preferences.balance_workload is True
    assert GenerationParameters.from_mapping(params.as_dict()) == params
