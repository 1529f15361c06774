from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, Enum, Integer, Text, Uuid

from models.base import Base, utcnow


ADJUSTMENT_ACTION = Enum(
    "swap",
    "move",
    "cancel",
    "reschedule",
    name="adjustment_action",
    native_enum=False,
)


class AdjustmentRecord(Base):
    """Append-only audit row; never updated or deleted."""

    __tablename__ = "adjustment_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    version_id = Column(Uuid, nullable=False, index=True)
    actor_id = Column(Uuid, nullable=False)
    action = Column(ADJUSTMENT_ACTION, nullable=False)
    entry_id = Column(Uuid, nullable=False)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    reason = Column(Text, nullable=False)
    # manual | conflict_resolution | optimization
    source = Column(Text, nullable=False, default="manual")
    # Version revision this adjustment produced.
    revision = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
