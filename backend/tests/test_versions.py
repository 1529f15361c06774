from __future__ import annotations

import threading
import uuid
from datetime import date

import pytest

from conftest import entry
from core.errors import ConflictError, NotFoundError, ValidationError
from core.events import CONFLICT_CREATED, VERSION_ARCHIVED, VERSION_PUBLISHED


def _clean_draft(services, school, name="clean"):
    entries = [
        entry(school, klass=0, subject=0, teacher=0, room=0, day=0, period=0),
        entry(school, klass=1, subject=1, teacher=1, room=1, day=0, period=0),
        entry(school, klass=1, subject=0, teacher=0, room=0, day=0, period=1),
    ]
    version = services.versions.create_draft(school.scope, entries, name=name)
    services.detector.scan(version.id)
    return version


def test_publish_clean_draft(services, school, events):
    version = _clean_draft(services, school)
    actor = uuid.uuid4()

    published = services.versions.publish(version.id, date(2026, 9, 1), actor)

    assert published.status == "published"
    assert published.effective_date == date(2026, 9, 1)
    assert published.published_by == actor
    assert services.versions.get_current(school.scope).id == version.id
    assert events.named(VERSION_PUBLISHED)[0]["version_id"] == str(version.id)


def test_saved_draft_with_clash_cannot_be_published(services, school, events):
    clash = [
        entry(school, klass=0, subject=0, teacher=0, room=0, day=0, period=0),
        entry(school, klass=1, subject=0, teacher=0, room=1, day=0, period=0),
    ]
    # No explicit scan: saving the draft records its conflicts.
    version = services.versions.create_draft(school.scope, clash, name="clash")

    stored = services.detector.list_conflicts(version.id, severity="critical")
    assert "teacher_double_booking" in {c.conflict_type for c in stored}
    assert events.named(CONFLICT_CREATED)
    assert services.versions.get(version.id).unsatisfied_hard_constraints

    with pytest.raises(ConflictError) as exc:
        services.versions.publish(version.id, date(2026, 9, 1), uuid.uuid4())

    assert exc.value.code == "unresolved_critical_conflicts"
    assert services.versions.get(version.id).status == "draft"
    assert services.versions.get_current(school.scope) is None


def test_publish_twice_is_rejected(services, school):
    version = _clean_draft(services, school)
    services.versions.publish(version.id, date(2026, 9, 1), uuid.uuid4())
    with pytest.raises(ConflictError) as exc:
        services.versions.publish(version.id, date(2026, 9, 1), uuid.uuid4())
    assert exc.value.code == "version_not_draft"


def test_published_versions_are_read_only(services, school):
    version = _clean_draft(services, school)
    services.versions.publish(version.id, date(2026, 9, 1), uuid.uuid4())
    entry_id = services.versions.entries(version.id)[0].id

    with pytest.raises(ConflictError) as exc:
        services.adjustments.adjust(version.id, [{"action": "cancel", "entry_id": str(entry_id)}], uuid.uuid4())
    assert exc.value.code == "version_not_draft"


def test_archive_requires_reason(services, school):
    version = _clean_draft(services, school)
    services.versions.publish(version.id, date(2026, 9, 1), uuid.uuid4())

    with pytest.raises(ValidationError) as exc:
        services.versions.archive(version.id, "   ", uuid.uuid4())
    assert exc.value.code == "archive_reason_required"
    assert services.versions.get(version.id).status == "published"


def test_archive_with_replacement(services, school, events):
    old = _clean_draft(services, school, name="autumn")
    services.versions.publish(old.id, date(2026, 9, 1), uuid.uuid4())
    new = _clean_draft(services, school, name="winter")

    archived = services.versions.archive(old.id, "new term plan", uuid.uuid4(), replacement_version_id=new.id)

    assert archived.status == "archived"
    assert archived.archive_reason == "new term plan"
    assert services.versions.get(new.id).replaces_version_id == old.id
    assert services.versions.get_current(school.scope) is None
    assert events.named(VERSION_ARCHIVED)[0]["replacement_version_id"] == str(new.id)


def test_archive_waits_for_replacement_lock(services, school):
    old = _clean_draft(services, school, name="autumn")
    services.versions.publish(old.id, date(2026, 9, 1), uuid.uuid4())
    new = _clean_draft(services, school, name="winter")
    done = threading.Event()

    def archive() -> None:
        services.versions.archive(old.id, "new term plan", uuid.uuid4(), replacement_version_id=new.id)
        done.set()

    with services.version_locks.hold(new.id):
        worker = threading.Thread(target=archive)
        worker.start()
        assert not done.wait(0.3)
    worker.join(10)

    assert done.is_set()
    assert services.versions.get(new.id).replaces_version_id == old.id


def test_only_published_versions_are_archived(services, school):
    version = _clean_draft(services, school)
    with pytest.raises(ConflictError) as exc:
        services.versions.archive(version.id, "obsolete", uuid.uuid4())
    assert exc.value.code == "version_not_published"


def test_discard_draft(services, school):
    version = _clean_draft(services, school)
    discarded = services.versions.discard(version.id, uuid.uuid4())
    assert discarded.status == "discarded"

    with pytest.raises(ConflictError):
        services.versions.publish(version.id, date(2026, 9, 1), uuid.uuid4())


def test_views_group_entries(services, school):
    version = _clean_draft(services, school)
    teacher = school.teachers[0].id

    out = services.versions.view(version.id, view="teacher", filter_id=teacher)

    assert out["view"] == "teacher"
    assert list(out["groups"]) == [str(teacher)]
    assert [(e["day"], e["period"]) for e in out["groups"][str(teacher)]] == [(0, 0), (0, 1)]

    with pytest.raises(ValidationError):
        services.versions.view(version.id, view="weekly")


def test_list_versions_filters_by_status(services, school):
    first = _clean_draft(services, school, name="a")
    second = _clean_draft(services, school, name="b")
    services.versions.discard(first.id, uuid.uuid4())

    drafts = services.versions.list_versions(school.scope, status="draft")
    assert [v.id for v in drafts] == [second.id]
    assert len(services.versions.list_versions(school.scope)) == 2


def test_other_school_cannot_see_version(services, school):
    version = _clean_draft(services, school)
    with pytest.raises(NotFoundError):
        services.versions.get(version.id, school_id=uuid.uuid4())
