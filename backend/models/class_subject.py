from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, Integer, UniqueConstraint, Uuid

from models.base import Base, utcnow


class ClassSubject(Base):
    """A subject a class takes and the teacher(s) who deliver it.

    More than one teacher id makes every occurrence a joint lesson: all of them
    teach the class in the same slot.
    """

    __tablename__ = "class_subjects"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid, nullable=False, index=True)
    class_id = Column(Uuid, nullable=False, index=True)
    subject_id = Column(Uuid, nullable=False)
    teacher_ids = Column(JSON, nullable=False, default=list)
    # Overrides Subject.weekly_frequency for this class when set.
    weekly_frequency = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("class_id", "subject_id", name="uq_class_subjects_class_subject"),
    )
