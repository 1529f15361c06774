from __future__ import annotations

import logging

from sqlalchemy.engine import Engine

from core.config import settings
from core.database import create_db_engine, init_db, make_session_factory
from core.events import EventBus
from services.adjustments import AdjustmentService
from services.conflict_detector import ConflictDetector
from services.constraint_store import ConstraintStore
from services.locks import ScopeLeases, VersionLocks
from services.optimization import OptimizationAnalyzer
from services.orchestrator import GenerationOrchestrator, SolveFn
from services.reference_data import ReferenceDataService
from services.repository import Repository
from services.versions import VersionManager
from solver.engine import solve


logger = logging.getLogger(__name__)


class Services:
    """Explicitly wired service graph with a start/shutdown lifecycle."""

    def __init__(self, engine: Engine, *, workers: int | None = None, solve_fn: SolveFn = solve):
        self.engine = engine
        self.repo = Repository(make_session_factory(engine))
        self.events = EventBus()
        self.version_locks = VersionLocks()
        self.leases = ScopeLeases()

        self.constraints = ConstraintStore(self.repo)
        self.reference = ReferenceDataService(self.repo, self.constraints)
        self.detector = ConflictDetector(self.repo, self.reference, self.version_locks, self.events)
        self.adjustments = AdjustmentService(self.repo, self.reference, self.detector, self.version_locks)
        self.versions = VersionManager(self.repo, self.version_locks, self.events, self.reference, self.detector)
        self.optimization = OptimizationAnalyzer(self.repo, self.reference, self.adjustments)
        self.orchestrator = GenerationOrchestrator(
            self.repo,
            self.reference,
            self.versions,
            self.detector,
            self.leases,
            self.events,
            workers=workers,
            solve_fn=solve_fn,
        )
        self._started = False

    @classmethod
    def from_settings(cls) -> "Services":
        return cls(create_db_engine(settings.database_url), workers=settings.solver_workers)

    def start(self) -> None:
        if self._started:
            return
        init_db(self.engine)
        self.orchestrator.start()
        self._started = True
        logger.info("Services started")

    def shutdown(self, *, drain: bool = True) -> None:
        if not self._started:
            return
        self.orchestrator.shutdown(drain=drain)
        self.events.close()
        self.engine.dispose()
        self._started = False
        logger.info("Services stopped")
