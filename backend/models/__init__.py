from models.adjustment_record import AdjustmentRecord
from models.class_subject import ClassSubject
from models.generation_hint import GenerationHint
from models.generation_job import GenerationJob
from models.room import Room
from models.schedule_conflict import ScheduleConflict
from models.schedule_entry import ScheduleEntry
from models.schedule_version import ScheduleVersion
from models.scheduling_constraint import SchedulingConstraint
from models.school_class import SchoolClass
from models.subject import Subject
from models.teacher import Teacher
from models.time_slot import TimeSlot

__all__ = [
	"AdjustmentRecord",
	"ClassSubject",
	"GenerationHint",
	"GenerationJob",
	"Room",
	"ScheduleConflict",
	"ScheduleEntry",
	"ScheduleVersion",
	"SchedulingConstraint",
	"SchoolClass",
	"Subject",
	"Teacher",
	"TimeSlot",
]
