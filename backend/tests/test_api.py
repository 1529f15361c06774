from __future__ import annotations

import time
import uuid

import pytest
from fastapi.testclient import TestClient

from core.security import create_access_token
from main import create_app


@pytest.fixture()
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


@pytest.fixture()
def actor(school):
    return {"id": uuid.uuid4(), "school_id": school.scope.school_id}


@pytest.fixture()
def auth(actor):
    token = create_access_token(actor_id=str(actor["id"]), school_id=str(actor["school_id"]))
    return {"Authorization": f"Bearer {token}"}


def _wait(client, auth, job_id, timeout=60.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/timetable/jobs/{job_id}", headers=auth).json()
        if body["state"] in ("completed", "failed", "cancelled"):
            return body
        assert time.monotonic() < deadline, body
        time.sleep(0.05)


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"app": "ok", "database": "ok"}


def test_requests_without_token_are_rejected(client, school):
    res = client.get(
        "/api/timetable/versions/",
        params={"academic_year_id": str(school.scope.academic_year_id), "term_id": str(school.scope.term_id)},
    )
    assert res.status_code == 401


def test_garbage_token_is_rejected(client):
    res = client.get(f"/api/timetable/jobs/{uuid.uuid4()}", headers={"Authorization": "Bearer nonsense"})
    assert res.status_code == 401
    assert res.json()["detail"] == "INVALID_TOKEN"


def test_domain_errors_use_code_payload(client, auth):
    res = client.get(f"/api/timetable/jobs/{uuid.uuid4()}", headers=auth)
    assert res.status_code == 404
    body = res.json()
    assert body["code"] == "job_not_found"
    assert set(body) == {"code", "message", "details"}


def test_invalid_constraint_maps_to_422(client, auth, school):
    res = client.post(
        "/api/timetable/constraints/",
        headers=auth,
        json={
            "academic_year_id": str(school.scope.academic_year_id),
            "scope": "teacher",
            "kind": "TeacherAvailability",
            "parameters": {"teacher_id": str(school.teachers[0].id)},
        },
    )
    assert res.status_code == 422
    assert res.json()["code"] == "invalid_constraint_parameters"


def test_constraint_crud(client, auth, school):
    created = client.post(
        "/api/timetable/constraints/",
        headers=auth,
        json={
            "academic_year_id": str(school.scope.academic_year_id),
            "scope": "teacher",
            "kind": "TeacherAvailability",
            "is_hard": False,
            "weight": 4,
            "parameters": {"teacher_id": str(school.teachers[0].id), "days_off": [4]},
        },
    )
    assert created.status_code == 201
    cid = created.json()["id"]

    patched = client.patch(f"/api/timetable/constraints/{cid}", headers=auth, json={"weight": 8})
    assert patched.status_code == 200
    assert patched.json()["weight"] == 8

    listed = client.get(
        "/api/timetable/constraints/",
        headers=auth,
        params={"academic_year_id": str(school.scope.academic_year_id)},
    )
    assert [c["id"] for c in listed.json()] == [cid]

    assert client.delete(f"/api/timetable/constraints/{cid}", headers=auth).status_code == 200
    assert client.get(f"/api/timetable/constraints/{cid}", headers=auth).status_code == 404


def test_generate_review_and_publish(client, auth, school):
    scope = {"academic_year_id": str(school.scope.academic_year_id), "term_id": str(school.scope.term_id)}
    res = client.post(
        "/api/timetable/generate",
        headers=auth,
        json={**scope, "seed": 5, "time_budget_seconds": 30, "max_iterations": 300},
    )
    assert res.status_code == 202
    job = _wait(client, auth, res.json()["id"])
    assert job["state"] == "completed"
    vid = job["result_version_id"]

    detail = client.get(f"/api/timetable/versions/{vid}", headers=auth).json()
    assert detail["version"]["status"] == "draft"
    assert len(detail["entries"]) == 14

    by_class = client.get(f"/api/timetable/versions/{vid}", headers=auth, params={"view": "class"}).json()
    assert set(by_class["groups"]) == {str(c.id) for c in school.classes}

    conflicts = client.get(f"/api/timetable/versions/{vid}/conflicts", headers=auth, params={"severity": "critical"})
    assert conflicts.json() == []

    analytics = client.get(f"/api/timetable/versions/{vid}/analytics", headers=auth).json()
    assert analytics["version_id"] == vid

    suggestions = client.get(f"/api/timetable/versions/{vid}/optimization/suggestions", headers=auth)
    assert suggestions.status_code == 200

    published = client.post(f"/api/timetable/versions/{vid}/publish", headers=auth, json={"effective_date": "2026-09-01"})
    assert published.status_code == 200
    assert published.json()["status"] == "published"

    current = client.get("/api/timetable/versions/current", headers=auth, params=scope)
    assert current.json()["id"] == vid

    again = client.post(f"/api/timetable/versions/{vid}/publish", headers=auth, json={"effective_date": "2026-09-01"})
    assert again.status_code == 409
    assert again.json()["code"] == "version_not_draft"


def test_other_school_sees_nothing(client, services, school, auth):
    job = services.orchestrator.submit(school.scope, {"seed": 1, "time_budget_seconds": 30, "max_iterations": 100}, None)
    stranger = create_access_token(actor_id=str(uuid.uuid4()), school_id=str(uuid.uuid4()))

    res = client.get(f"/api/timetable/jobs/{job.id}", headers={"Authorization": f"Bearer {stranger}"})

    assert res.status_code == 404
    assert _wait(client, auth, job.id)["state"] == "completed"


def test_cookie_token_is_accepted(client, actor, school):
    token = create_access_token(actor_id=str(actor["id"]), school_id=str(actor["school_id"]))
    client.cookies.set("access_token", token)
    res = client.get("/api/timetable/teachers/")
    assert res.status_code == 200
    assert [t["code"] for t in res.json()] == ["T0", "T1", "T2"]
