from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, Enum, Float, Integer, Text, Uuid

from models.base import Base, utcnow


JOB_STATE = Enum(
    "pending",
    "running",
    "completed",
    "failed",
    "cancelled",
    name="generation_job_state",
    native_enum=False,
)

TERMINAL_JOB_STATES = frozenset({"completed", "failed", "cancelled"})


class GenerationJob(Base):
    __tablename__ = "generation_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid, nullable=False, index=True)
    academic_year_id = Column(Uuid, nullable=False)
    term_id = Column(Uuid, nullable=False)

    state = Column(JOB_STATE, nullable=False, default="pending")
    progress = Column(Float, nullable=False, default=0.0)
    seed = Column(Integer, nullable=False)
    parameters = Column(JSON, nullable=False, default=dict)

    base_version_id = Column(Uuid, nullable=True)
    result_version_id = Column(Uuid, nullable=True)
    error = Column(Text, nullable=True)
    # Opaque reference into the server logs for internal failures.
    error_ref = Column(Text, nullable=True)
    # Solver statistics and infeasibility diagnostics of the finished run.
    stats = Column(JSON, nullable=True)

    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return str(self.state) in TERMINAL_JOB_STATES
