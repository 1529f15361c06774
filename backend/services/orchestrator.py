from __future__ import annotations

import logging
import queue
import random
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from core.config import settings
from core.errors import ConflictError, NotFoundError, TimetableError, ValidationError
from core.events import JOB_CANCELLED, JOB_COMPLETED, JOB_FAILED, EventBus
from core.logging import job_context
from models import GenerationHint, GenerationJob, ScheduleConflict, ScheduleVersion
from models.base import utcnow
from services.adjustments import version_scope
from services.conflict_detector import ConflictDetector
from services.locks import ScopeLeases
from services.reference_data import ReferenceDataService
from services.repository import Repository, Scope, get_or_404, load_entries
from services.versions import VersionManager
from solver.engine import SolveOptions, SolveResult, solve
from solver.problem import FixedPlacement, HintKey, Preferences, Problem, Slot, validate_problem


logger = logging.getLogger(__name__)

NON_TERMINAL_STATES = ("pending", "running")
_PARAMETER_KEYS = {
    "seed",
    "time_budget_seconds",
    "max_iterations",
    "max_periods_per_day",
    "use_hints",
    "preferences",
    "name",
    "fixed_entry_ids",
    "exclude_slots",
    "reason",
}
_PREFERENCE_KEYS = {"balance_workload", "minimize_gaps", "spread_subjects", "prefer_room_fit"}
MODIFICATION_KEYS = ("fixed_entry_ids", "exclude_slots", "preferences")

SolveFn = Callable[..., SolveResult]


@dataclass(frozen=True)
class GenerationParameters:
    seed: int | None = None
    time_budget_seconds: float = field(default_factory=lambda: float(settings.solver_default_time_budget_seconds))
    max_iterations: int = field(default_factory=lambda: int(settings.solver_default_max_iterations))
    max_periods_per_day: int | None = None
    use_hints: bool = True
    preferences: Preferences = field(default_factory=Preferences)
    name: str | None = None
    fixed_entry_ids: tuple[str, ...] = ()
    exclude_slots: tuple[Slot, ...] = ()
    reason: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "GenerationParameters":
        raw = dict(raw or {})
        errors: list[str] = []
        unknown = set(raw) - _PARAMETER_KEYS
        if unknown:
            errors.append(f"unknown parameters: {', '.join(sorted(unknown))}")

        budget = raw.get("time_budget_seconds")
        budget = float(settings.solver_default_time_budget_seconds) if budget is None else float(budget)
        limit = settings.effective_max_time_budget()
        if budget <= 0 or budget > limit:
            errors.append(f"time_budget_seconds must be in (0, {limit}]")

        iterations = raw.get("max_iterations")
        iterations = int(settings.solver_default_max_iterations) if iterations is None else int(iterations)
        if iterations < 0:
            errors.append("max_iterations must not be negative")

        cap = raw.get("max_periods_per_day")
        if cap is not None and int(cap) < 1:
            errors.append("max_periods_per_day must be at least 1")

        prefs_raw = dict(raw.get("preferences") or {})
        bad_prefs = set(prefs_raw) - _PREFERENCE_KEYS
        if bad_prefs:
            errors.append(f"unknown preferences: {', '.join(sorted(bad_prefs))}")

        slots: list[Slot] = []
        for s in raw.get("exclude_slots") or []:
            try:
                slots.append(Slot(int(s["day"]), int(s["period"])))
            except (KeyError, TypeError, ValueError):
                errors.append(f"invalid excluded slot {s!r}")

        if errors:
            raise ValidationError("invalid_generation_parameters", "Generation parameters are invalid.", details={"errors": errors})

        return cls(
            seed=None if raw.get("seed") is None else int(raw["seed"]),
            time_budget_seconds=budget,
            max_iterations=iterations,
            max_periods_per_day=None if cap is None else int(cap),
            use_hints=bool(raw.get("use_hints", True)),
            preferences=Preferences(**{k: bool(v) for k, v in prefs_raw.items()}),
            name=(raw.get("name") or None),
            fixed_entry_ids=tuple(str(x) for x in raw.get("fixed_entry_ids") or ()),
            exclude_slots=tuple(slots),
            reason=raw.get("reason"),
        )

    def as_dict(self) -> dict[str, Any]:
        p = self.preferences
        return {
            "seed": self.seed,
            "time_budget_seconds": self.time_budget_seconds,
            "max_iterations": self.max_iterations,
            "max_periods_per_day": self.max_periods_per_day,
            "use_hints": self.use_hints,
            "preferences": {
                "balance_workload": p.balance_workload,
                "minimize_gaps": p.minimize_gaps,
                "spread_subjects": p.spread_subjects,
                "prefer_room_fit": p.prefer_room_fit,
            },
            "name": self.name,
            "fixed_entry_ids": list(self.fixed_entry_ids),
            "exclude_slots": [s.as_dict() for s in self.exclude_slots],
            "reason": self.reason,
        }


def job_scope(job: GenerationJob) -> Scope:
    return Scope(job.school_id, job.academic_year_id, job.term_id)


def excluded_slots(problem_grid, params: GenerationParameters) -> frozenset[Slot]:
    out = set(params.exclude_slots)
    if params.max_periods_per_day is not None:
        for day in problem_grid.days:
            out.update(Slot(day, p) for p in problem_grid.periods_on(day)[params.max_periods_per_day:])
    return frozenset(out)


class GenerationOrchestrator:
    """Runs generation jobs on a bounded pool of worker threads.

    ``submit`` returns as soon as the job row exists; one job per scope may be
    pending or running at a time.
    """

    def __init__(
        self,
        repo: Repository,
        reference: ReferenceDataService,
        versions: VersionManager,
        detector: ConflictDetector,
        leases: ScopeLeases,
        events: EventBus,
        *,
        workers: int | None = None,
        solve_fn: SolveFn = solve,
    ):
        self._repo = repo
        self._reference = reference
        self._versions = versions
        self._detector = detector
        self._leases = leases
        self._events = events
        self._workers = int(workers or settings.solver_workers)
        self._solve = solve_fn
        self._queue: queue.Queue[uuid.UUID | None] = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._cancel_flags: dict[uuid.UUID, threading.Event] = {}
        self._lock = threading.Lock()
        self._accepting = False

    # ------------------------
    # Lifecycle
    # ------------------------
    def start(self) -> None:
        with self._lock:
            if self._accepting:
                return
            self._accepting = True
        self._fail_interrupted()
        for i in range(self._workers):
            t = threading.Thread(target=self._worker_loop, name=f"generation-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("Generation orchestrator started with %s workers", self._workers)

    def shutdown(self, *, drain: bool = True, timeout: float | None = None) -> None:
        """Stop intake; with ``drain`` queued jobs still run, otherwise they are cancelled."""

        with self._lock:
            was_accepting = self._accepting
            self._accepting = False
            flags = list(self._cancel_flags.items())
        if not was_accepting and not self._threads:
            return
        if not drain:
            for job_id, flag in flags:
                flag.set()
                self._cancel_pending(job_id)
        for _ in self._threads:
            self._queue.put(None)
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        logger.info("Generation orchestrator stopped (drain=%s)", drain)

    def _fail_interrupted(self) -> None:
        def _work(db: Session) -> int:
            res = db.execute(
                update(GenerationJob)
                .where(GenerationJob.state.in_(NON_TERMINAL_STATES))
                .values(state="failed", error="interrupted", completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return int(res.rowcount or 0)

        count = self._repo.run(_work)
        if count:
            logger.warning("Marked %s interrupted generation jobs as failed", count)

    # ------------------------
    # Submission
    # ------------------------
    def _preflight(self, scope: Scope, params: GenerationParameters) -> None:
        grid = self._reference.time_grid(scope)
        if len(grid) == 0:
            raise ValidationError("empty_time_grid", "Define the time grid before generating.")
        for slot in params.exclude_slots:
            if slot not in grid:
                raise ValidationError("slot_not_in_grid", details=slot.as_dict())
        problem = self._reference.load_problem(scope, excluded_slots=excluded_slots(grid, params))
        validate_problem(problem)

    def submit(
        self,
        scope: Scope,
        parameters: Mapping[str, Any] | None,
        actor_id: uuid.UUID | None,
        *,
        base_version_id: uuid.UUID | None = None,
    ) -> GenerationJob:
        if not self._accepting:
            raise ConflictError("orchestrator_stopped", "Generation is not accepting new jobs.")
        params = GenerationParameters.from_mapping(parameters)
        self._preflight(scope, params)

        seed = params.seed if params.seed is not None else random.SystemRandom().randrange(2**31)
        stored = {**params.as_dict(), "seed": seed}
        job_id = uuid.uuid4()
        if not self._leases.try_acquire(scope, job_id):
            holder = self._leases.holder(scope)
            if holder is not None and self._is_finished(holder):
                # The holder is terminal in the store and only its bookkeeping is left.
                self._leases.release(scope, holder)
        if self._leases.holder(scope) != job_id and not self._leases.try_acquire(scope, job_id):
            raise ConflictError(
                "job_already_running",
                "A generation job is already active for this term.",
                details={"job_id": str(self._leases.holder(scope))},
            )

        def _work(db: Session) -> GenerationJob:
            active = db.execute(
                select(GenerationJob.id)
                .where(GenerationJob.school_id == scope.school_id)
                .where(GenerationJob.academic_year_id == scope.academic_year_id)
                .where(GenerationJob.term_id == scope.term_id)
                .where(GenerationJob.state.in_(NON_TERMINAL_STATES))
                .limit(1)
            ).scalar_one_or_none()
            if active is not None:
                raise ConflictError(
                    "job_already_running",
                    "A generation job is already active for this term.",
                    details={"job_id": str(active)},
                )
            job = GenerationJob(
                id=job_id,
                school_id=scope.school_id,
                academic_year_id=scope.academic_year_id,
                term_id=scope.term_id,
                state="pending",
                progress=0.0,
                seed=seed,
                parameters=stored,
                base_version_id=base_version_id,
                created_by=actor_id,
            )
            db.add(job)
            db.flush()
            return job

        try:
            job = self._repo.run(_work)
        except Exception:
            self._leases.release(scope, job_id)
            raise

        with self._lock:
            self._cancel_flags[job_id] = threading.Event()
        self._queue.put(job_id)
        logger.info("Generation job %s queued for %s (seed=%s)", job_id, scope, seed)
        return job

    def _is_finished(self, job_id: uuid.UUID) -> bool:
        job = self._repo.run(lambda db: db.get(GenerationJob, job_id))
        return job is None or job.is_terminal

    def regenerate(
        self,
        base_version_id: uuid.UUID,
        modifications: Mapping[str, Any] | None,
        reason: str,
        actor_id: uuid.UUID | None,
        *,
        school_id: uuid.UUID | None = None,
    ) -> GenerationJob:
        """New job seeded from a version's parameters plus pinned entries, excluded slots and preferences."""

        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("regeneration_reason_required", "A reason is required to regenerate.")
        mods = dict(modifications or {})
        unknown = set(mods) - set(MODIFICATION_KEYS)
        if unknown:
            raise ValidationError(
                "invalid_modifications",
                details={"unknown": sorted(unknown), "allowed": list(MODIFICATION_KEYS)},
            )

        def _work(db: Session) -> tuple[ScheduleVersion, dict[str, Any], set[str]]:
            version = get_or_404(db, ScheduleVersion, base_version_id, "version_not_found")
            base_params: dict[str, Any] = {}
            if version.parent_job_id is not None:
                parent = db.get(GenerationJob, version.parent_job_id)
                if parent is not None:
                    base_params = dict(parent.parameters or {})
            return version, base_params, {str(e.id) for e in load_entries(db, base_version_id)}

        version, base_params, present = self._repo.run(_work)
        if school_id is not None and version.school_id != school_id:
            raise NotFoundError("version_not_found", details={"id": str(base_version_id)})

        fixed = [str(x) for x in mods.get("fixed_entry_ids") or []]
        missing = [x for x in fixed if x not in present]
        if missing:
            raise ValidationError("unknown_fixed_entries", details={"entry_ids": missing})

        params = {k: v for k, v in base_params.items() if k in _PARAMETER_KEYS and k not in ("seed", "name")}
        params["fixed_entry_ids"] = fixed
        if "exclude_slots" in mods:
            params["exclude_slots"] = list(mods["exclude_slots"] or [])
        if "preferences" in mods:
            params["preferences"] = {**dict(params.get("preferences") or {}), **dict(mods["preferences"] or {})}
        params["reason"] = reason
        params["name"] = f"Regenerated from {version.name}"

        job = self.submit(version_scope(version), params, actor_id, base_version_id=base_version_id)
        logger.info("Regeneration job %s from version %s (%s)", job.id, base_version_id, reason)
        return job

    # ------------------------
    # Status & cancellation
    # ------------------------
    def get_status(self, job_id: uuid.UUID, *, school_id: uuid.UUID | None = None) -> GenerationJob:
        job = self._repo.run(lambda db: get_or_404(db, GenerationJob, job_id, "job_not_found"))
        if school_id is not None and job.school_id != school_id:
            raise NotFoundError("job_not_found", details={"id": str(job_id)})
        return job

    def list_jobs(self, scope: Scope, *, state: str | None = None) -> list[GenerationJob]:
        def _work(db: Session) -> list[GenerationJob]:
            q = (
                select(GenerationJob)
                .where(GenerationJob.school_id == scope.school_id)
                .where(GenerationJob.academic_year_id == scope.academic_year_id)
                .where(GenerationJob.term_id == scope.term_id)
            )
            if state is not None:
                q = q.where(GenerationJob.state == state)
            q = q.order_by(GenerationJob.created_at.desc(), GenerationJob.id.asc())
            return list(db.execute(q).scalars().all())

        return self._repo.run(_work)

    def _cancel_pending(self, job_id: uuid.UUID) -> GenerationJob | None:
        def _work(db: Session) -> GenerationJob | None:
            res = db.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id)
                .where(GenerationJob.state == "pending")
                .values(state="cancelled", completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                return None
            return db.get(GenerationJob, job_id)

        job = self._repo.run(_work)
        if job is not None:
            self._finish_bookkeeping(job)
            self._events.emit(JOB_CANCELLED, {"job_id": str(job.id), "school_id": str(job.school_id)})
            logger.info("Generation job %s cancelled before it started", job_id)
        return job

    def cancel(self, job_id: uuid.UUID, *, school_id: uuid.UUID | None = None) -> GenerationJob:
        """Pending jobs end at once, running jobs stop at the next search step, terminal jobs are left alone."""

        job = self.get_status(job_id, school_id=school_id)
        if job.is_terminal:
            return job
        cancelled = self._cancel_pending(job_id)
        if cancelled is not None:
            return cancelled
        with self._lock:
            flag = self._cancel_flags.get(job_id)
        if flag is not None:
            flag.set()
            logger.info("Cancellation requested for running job %s", job_id)
        return self.get_status(job_id)

    def _finish_bookkeeping(self, job: GenerationJob) -> None:
        self._leases.release(job_scope(job), job.id)
        with self._lock:
            self._cancel_flags.pop(job.id, None)

    # ------------------------
    # Workers
    # ------------------------
    def _worker_loop(self) -> None:
        while True:
            job_id = self._queue.get()
            try:
                if job_id is None:
                    return
                with job_context(job_id):
                    self._run(job_id)
            except Exception:
                logger.exception("Generation worker crashed while handling job %s", job_id)
            finally:
                self._queue.task_done()

    def _claim(self, job_id: uuid.UUID) -> GenerationJob | None:
        def _work(db: Session) -> GenerationJob | None:
            res = db.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id)
                .where(GenerationJob.state == "pending")
                .values(state="running", started_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                return None
            return db.get(GenerationJob, job_id)

        return self._repo.run(_work)

    def _load_hints(self, scope: Scope, job_id: uuid.UUID) -> dict[HintKey, Slot]:
        def _work(db: Session) -> dict[HintKey, Slot]:
            rows = db.execute(
                select(GenerationHint)
                .where(GenerationHint.school_id == scope.school_id)
                .where(GenerationHint.academic_year_id == scope.academic_year_id)
                .where(GenerationHint.term_id == scope.term_id)
                .where(GenerationHint.consumed_by_job_id.is_(None))
                .order_by(GenerationHint.created_at.asc())
            ).scalars().all()
            hints: dict[HintKey, Slot] = {}
            for row in rows:
                for p in row.placements or []:
                    key = (uuid.UUID(p["class_id"]), uuid.UUID(p["subject_id"]), int(p["occurrence"]))
                    hints[key] = Slot(int(p["day"]), int(p["period"]))
                row.consumed_by_job_id = job_id
            return hints

        return self._repo.run(_work)

    def _load_fixed(self, base_version_id: uuid.UUID | None, entry_ids: tuple[str, ...]) -> list[FixedPlacement]:
        if base_version_id is None or not entry_ids:
            return []
        wanted = set(entry_ids)

        def _work(db: Session) -> list[FixedPlacement]:
            return [
                FixedPlacement(
                    class_id=e.class_id,
                    subject_id=e.subject_id,
                    occurrence=int(e.occurrence),
                    teacher_id=e.teacher_id,
                    slot=Slot(int(e.day_of_week), int(e.period)),
                    room_id=e.room_id,
                )
                for e in load_entries(db, base_version_id)
                if str(e.id) in wanted
            ]

        return self._repo.run(_work)

    def _progress_reporter(self, job_id: uuid.UUID) -> Callable[[float], None]:
        step = float(settings.job_progress_step)
        last = [0.0]

        def report(value: float) -> None:
            value = max(0.0, min(0.99, float(value)))
            if value - last[0] < step:
                return
            last[0] = value
            self._repo.run(
                lambda db: db.execute(
                    update(GenerationJob)
                    .where(GenerationJob.id == job_id)
                    .where(GenerationJob.state == "running")
                    .values(progress=round(value, 4))
                    .execution_options(synchronize_session=False)
                )
            )

        return report

    def _build_problem(self, job: GenerationJob, params: GenerationParameters) -> Problem:
        scope = job_scope(job)
        grid = self._reference.time_grid(scope)
        hints = self._load_hints(scope, job.id) if params.use_hints else {}
        return self._reference.load_problem(
            scope,
            preferences=params.preferences,
            excluded_slots=excluded_slots(grid, params),
            fixed=self._load_fixed(job.base_version_id, params.fixed_entry_ids),
            hints=hints,
        )

    def _run(self, job_id: uuid.UUID) -> None:
        job = self._claim(job_id)
        if job is None:
            logger.debug("Skipping job %s; it is no longer pending", job_id)
            return
        with self._lock:
            flag = self._cancel_flags.setdefault(job_id, threading.Event())
        logger.info("Generation job %s started", job_id)

        try:
            params = GenerationParameters.from_mapping(
                {k: v for k, v in (job.parameters or {}).items() if k in _PARAMETER_KEYS}
            )
            problem = self._build_problem(job, params)
            result = self._solve(
                problem,
                SolveOptions(
                    seed=int(job.seed),
                    time_budget_seconds=params.time_budget_seconds,
                    max_iterations=params.max_iterations,
                ),
                progress=self._progress_reporter(job_id),
                cancel_event=flag,
            )
            if result.cancelled or flag.is_set():
                self._mark(job_id, "cancelled", stats=result.stats)
                self._finish_bookkeeping(job)
                self._events.emit(JOB_CANCELLED, {"job_id": str(job_id), "school_id": str(job.school_id)})
                logger.info("Generation job %s cancelled while running", job_id)
                return

            version_id = self._persist(job, params, result, problem)
            self._mark(job_id, "completed", result_version_id=version_id, stats=result.stats)
            self._finish_bookkeeping(job)
            self._events.emit(
                JOB_COMPLETED,
                {
                    "job_id": str(job_id),
                    "version_id": str(version_id),
                    "school_id": str(job.school_id),
                    "optimization_score": result.optimization_score,
                    "unsatisfied_hard_constraints": len(result.unsatisfied_hard_constraints),
                },
            )
            logger.info(
                "Generation job %s completed: version=%s score=%s unsatisfied=%s",
                job_id,
                version_id,
                result.optimization_score,
                len(result.unsatisfied_hard_constraints),
            )
        except TimetableError as exc:
            # Input changed between submit and run; report it like a rejected request.
            logger.warning("Generation job %s rejected its input: %s", job_id, exc.code)
            self._fail(job, error=exc.code, error_ref=None)
        except Exception:
            error_ref = uuid.uuid4().hex[:12]
            logger.exception("Generation job %s crashed (error_ref=%s)", job_id, error_ref)
            self._fail(job, error="internal_error", error_ref=error_ref)

    def _persist(self, job: GenerationJob, params: GenerationParameters, result: SolveResult, problem: Problem) -> uuid.UUID:
        """Draft and its conflict records in one transaction; a failed scan leaves no orphan draft."""

        def _work(db: Session) -> tuple[uuid.UUID, list[ScheduleConflict]]:
            version, _rows = self._versions.create_draft_in_session(
                db,
                job_scope(job),
                result.entries,
                name=params.name or f"Generation {str(job.id)[:8]}",
                optimization_score=result.optimization_score,
                penalty=result.penalty,
                parent_job_id=job.id,
                base_version_id=job.base_version_id,
                created_by=job.created_by,
            )
            created, _cleared = self._detector.reconcile(db, version, problem)
            return version.id, created

        version_id, created = self._repo.run(_work)
        self._detector.announce(created, [])
        return version_id

    def _mark(self, job_id: uuid.UUID, state: str, **values: Any) -> None:
        def _work(db: Session) -> None:
            job = db.get(GenerationJob, job_id)
            job.state = state
            job.completed_at = utcnow()
            if state == "completed":
                job.progress = 1.0
            for k, v in values.items():
                setattr(job, k, v)

        self._repo.run(_work)

    def _fail(self, job: GenerationJob, *, error: str, error_ref: str | None) -> None:
        try:
            self._mark(job.id, "failed", error=error, error_ref=error_ref)
        finally:
            self._finish_bookkeeping(job)
        self._events.emit(
            JOB_FAILED,
            {"job_id": str(job.id), "school_id": str(job.school_id), "error": error, "error_ref": error_ref},
        )
