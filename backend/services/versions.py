from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import date
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from core.errors import ConflictError, NotFoundError, ValidationError
from core.events import VERSION_ARCHIVED, VERSION_PUBLISHED, EventBus
from models import ScheduleConflict, ScheduleEntry, ScheduleVersion
from models.base import utcnow
from services.conflict_detector import ConflictDetector
from services.locks import VersionLocks
from services.reference_data import ReferenceDataService
from services.repository import Repository, Scope, get_or_404, load_entries
from solver.problem import Entry


logger = logging.getLogger(__name__)

VIEWS = ("full", "teacher", "class", "room", "subject")
_VIEW_KEY = {"teacher": "teacher_id", "class": "class_id", "room": "room_id", "subject": "subject_id"}


def entry_out(e: ScheduleEntry) -> dict[str, Any]:
    return {
        "id": str(e.id),
        "teacher_id": str(e.teacher_id),
        "subject_id": str(e.subject_id),
        "class_id": str(e.class_id),
        "room_id": str(e.room_id),
        "day": int(e.day_of_week),
        "period": int(e.period),
        "occurrence": int(e.occurrence),
    }


class VersionManager:
    """Draft -> Published -> Archived lifecycle (and Draft -> Discarded)."""

    def __init__(
        self,
        repo: Repository,
        locks: VersionLocks,
        events: EventBus,
        reference: ReferenceDataService,
        detector: ConflictDetector,
    ):
        self._repo = repo
        self._locks = locks
        self._events = events
        self._reference = reference
        self._detector = detector

    # ------------------------
    # Creation
    # ------------------------
    def create_draft_in_session(
        self,
        db: Session,
        scope: Scope,
        entries: Iterable[Entry],
        *,
        name: str,
        optimization_score: float,
        penalty: float,
        parent_job_id: uuid.UUID | None = None,
        base_version_id: uuid.UUID | None = None,
        created_by: uuid.UUID | None = None,
    ) -> tuple[ScheduleVersion, list[ScheduleEntry]]:
        version = ScheduleVersion(
            school_id=scope.school_id,
            academic_year_id=scope.academic_year_id,
            term_id=scope.term_id,
            name=name,
            status="draft",
            optimization_score=optimization_score,
            penalty=penalty,
            unsatisfied_hard_constraints=[],
            revision=0,
            parent_job_id=parent_job_id,
            base_version_id=base_version_id,
            created_by=created_by,
        )
        db.add(version)
        db.flush()
        rows = []
        for pos, e in enumerate(entries):
            row = ScheduleEntry(
                version_id=version.id,
                teacher_id=e.teacher_id,
                subject_id=e.subject_id,
                class_id=e.class_id,
                room_id=e.room_id,
                day_of_week=e.slot.day,
                period=e.slot.period,
                occurrence=e.occurrence,
                position=pos,
            )
            db.add(row)
            rows.append(row)
        db.flush()
        return version, rows

    def create_draft(self, scope: Scope, entries: Iterable[Entry], *, name: str, actor_id: uuid.UUID | None = None) -> ScheduleVersion:
        """Manually saved draft. Its conflicts are stored in the same transaction as its entries."""

        entries = list(entries)
        problem = self._reference.load_problem(scope)

        def _work(db: Session) -> tuple[ScheduleVersion, list[ScheduleConflict]]:
            version, _rows = self.create_draft_in_session(
                db, scope, entries, name=name, optimization_score=0.0, penalty=0.0, created_by=actor_id
            )
            created, _cleared = self._detector.reconcile(db, version, problem)
            return version, created

        version, created = self._repo.run(_work)
        self._detector.announce(created, [])
        logger.info("Draft %s saved with %s conflicts", version.id, len(created))
        return version

    # ------------------------
    # Reads
    # ------------------------
    def get(self, version_id: uuid.UUID, *, school_id: uuid.UUID | None = None) -> ScheduleVersion:
        version = self._repo.run(lambda db: get_or_404(db, ScheduleVersion, version_id, "version_not_found"))
        if school_id is not None and version.school_id != school_id:
            raise NotFoundError("version_not_found", details={"id": str(version_id)})
        return version

    def entries(self, version_id: uuid.UUID) -> list[ScheduleEntry]:
        return self._repo.run(lambda db: load_entries(db, version_id))

    def view(
        self,
        version_id: uuid.UUID,
        *,
        view: str = "full",
        filter_id: uuid.UUID | None = None,
        school_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        """Version plus its entries, optionally grouped by teacher/class/room/subject."""

        if view not in VIEWS:
            raise ValidationError("invalid_view", details={"views": list(VIEWS)})
        version = self.get(version_id, school_id=school_id)
        entries = [entry_out(e) for e in self.entries(version_id)]
        out: dict[str, Any] = {"version": version, "view": view}
        if view == "full":
            out["entries"] = entries
            return out

        key = _VIEW_KEY[view]
        if filter_id is not None:
            entries = [e for e in entries if e[key] == str(filter_id)]
        grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for e in entries:
            grouped[e[key]].append(e)
        out["entries"] = entries
        out["groups"] = {k: sorted(v, key=lambda e: (e["day"], e["period"])) for k, v in sorted(grouped.items())}
        return out

    def list_versions(self, scope: Scope, *, status: str | None = None) -> list[ScheduleVersion]:
        def _work(db: Session) -> list[ScheduleVersion]:
            q = (
                select(ScheduleVersion)
                .where(ScheduleVersion.school_id == scope.school_id)
                .where(ScheduleVersion.academic_year_id == scope.academic_year_id)
                .where(ScheduleVersion.term_id == scope.term_id)
            )
            if status is not None:
                q = q.where(ScheduleVersion.status == status)
            q = q.order_by(ScheduleVersion.created_at.desc(), ScheduleVersion.id.asc())
            return list(db.execute(q).scalars().all())

        return self._repo.run(_work)

    def get_current(self, scope: Scope) -> ScheduleVersion | None:
        """Latest published version that has not been archived."""

        def _work(db: Session) -> ScheduleVersion | None:
            q = (
                select(ScheduleVersion)
                .where(ScheduleVersion.school_id == scope.school_id)
                .where(ScheduleVersion.academic_year_id == scope.academic_year_id)
                .where(ScheduleVersion.term_id == scope.term_id)
                .where(ScheduleVersion.status == "published")
                .order_by(ScheduleVersion.published_at.desc(), ScheduleVersion.created_at.desc())
                .limit(1)
            )
            return db.execute(q).scalars().first()

        return self._repo.run(_work)

    # ------------------------
    # Transitions
    # ------------------------
    def publish(self, version_id: uuid.UUID, effective_date: date, actor_id: uuid.UUID) -> ScheduleVersion:
        with self._locks.hold(version_id):

            def _work(db: Session) -> ScheduleVersion:
                version = get_or_404(db, ScheduleVersion, version_id, "version_not_found", for_update=True)
                if str(version.status) != "draft":
                    raise ConflictError(
                        "version_not_draft",
                        "Only draft versions can be published.",
                        details={"status": str(version.status)},
                    )
                critical = db.execute(
                    select(func.count(ScheduleConflict.id))
                    .where(ScheduleConflict.version_id == version_id)
                    .where(ScheduleConflict.severity == "critical")
                    .where(ScheduleConflict.is_resolved.is_(False))
                ).scalar_one()
                if int(critical) > 0:
                    raise ConflictError(
                        "unresolved_critical_conflicts",
                        "Resolve all critical conflicts before publishing.",
                        details={"unresolved_critical": int(critical)},
                    )
                # Conditional flip: a concurrent writer that already moved the row makes this a no-op.
                res = db.execute(
                    update(ScheduleVersion)
                    .where(ScheduleVersion.id == version_id)
                    .where(ScheduleVersion.status == "draft")
                    .values(
                        status="published",
                        effective_date=effective_date,
                        published_at=utcnow(),
                        published_by=actor_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    raise ConflictError("version_not_draft", "The version changed while publishing.")
                db.refresh(version)
                return version

            version = self._repo.run(_work)

        self._events.emit(
            VERSION_PUBLISHED,
            {
                "version_id": str(version.id),
                "school_id": str(version.school_id),
                "effective_date": version.effective_date.isoformat() if version.effective_date else None,
                "published_by": str(actor_id),
            },
        )
        logger.info("Version %s published by %s effective %s", version_id, actor_id, effective_date)
        return version

    def discard(self, version_id: uuid.UUID, actor_id: uuid.UUID) -> ScheduleVersion:
        with self._locks.hold(version_id):

            def _work(db: Session) -> ScheduleVersion:
                version = get_or_404(db, ScheduleVersion, version_id, "version_not_found", for_update=True)
                if str(version.status) != "draft":
                    raise ConflictError("version_not_draft", "Only draft versions can be discarded.")
                version.status = "discarded"
                version.discarded_at = utcnow()
                db.flush()
                return version

            version = self._repo.run(_work)
        logger.info("Version %s discarded by %s", version_id, actor_id)
        return version

    def archive(
        self,
        version_id: uuid.UUID,
        reason: str,
        actor_id: uuid.UUID,
        *,
        replacement_version_id: uuid.UUID | None = None,
    ) -> ScheduleVersion:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("archive_reason_required", "An archive reason is required.")
        if replacement_version_id == version_id:
            raise ValidationError("invalid_replacement", "A version cannot replace itself.")

        # The replacement row is written too, so both versions are locked.
        with self._locks.hold_many(version_id, replacement_version_id):

            def _work(db: Session) -> ScheduleVersion:
                version = get_or_404(db, ScheduleVersion, version_id, "version_not_found", for_update=True)
                if str(version.status) != "published":
                    raise ConflictError("version_not_published", "Only published versions can be archived.")
                if replacement_version_id is not None:
                    replacement = get_or_404(
                        db, ScheduleVersion, replacement_version_id, "replacement_not_found", for_update=True
                    )
                    if (replacement.school_id, replacement.academic_year_id, replacement.term_id) != (
                        version.school_id,
                        version.academic_year_id,
                        version.term_id,
                    ):
                        raise ValidationError("invalid_replacement", "Replacement must belong to the same term.")
                    if str(replacement.status) in ("archived", "discarded"):
                        raise ValidationError("invalid_replacement", "Replacement must be a draft or published version.")
                    replacement.replaces_version_id = version.id
                version.status = "archived"
                version.archived_at = utcnow()
                version.archive_reason = reason
                db.flush()
                return version

            version = self._repo.run(_work)

        self._events.emit(
            VERSION_ARCHIVED,
            {
                "version_id": str(version.id),
                "reason": reason,
                "replacement_version_id": str(replacement_version_id) if replacement_version_id else None,
                "archived_by": str(actor_id),
            },
        )
        logger.info("Version %s archived by %s (%s)", version_id, actor_id, reason)
        return version
