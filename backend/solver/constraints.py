from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class SlotRef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    day: int = Field(ge=0, le=6)
    period: int = Field(ge=0)


class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class TeacherAvailabilityParams(_Params):
    kind: Literal["TeacherAvailability"] = "TeacherAvailability"
    teacher_id: uuid.UUID
    unavailable_slots: tuple[SlotRef, ...] = ()
    days_off: tuple[int, ...] = ()

    @model_validator(mode="after")
    def _has_rule(self) -> "TeacherAvailabilityParams":
        if not self.unavailable_slots and not self.days_off:
            raise ValueError("TeacherAvailability needs unavailable_slots or days_off")
        if any(d < 0 or d > 6 for d in self.days_off):
            raise ValueError("days_off must be between 0 and 6")
        return self


class RoomCapacityParams(_Params):
    kind: Literal["RoomCapacity"] = "RoomCapacity"
    # None applies the rule to every room.
    room_id: uuid.UUID | None = None
    max_occupancy: int | None = Field(default=None, ge=0)


class SubjectWeeklyFrequencyParams(_Params):
    kind: Literal["SubjectWeeklyFrequency"] = "SubjectWeeklyFrequency"
    subject_id: uuid.UUID
    class_id: uuid.UUID | None = None
    periods_per_week: int = Field(ge=0, le=60)
    max_per_day: int | None = Field(default=None, ge=1)


class ConsecutivePeriodLimitParams(_Params):
    kind: Literal["ConsecutivePeriodLimit"] = "ConsecutivePeriodLimit"
    teacher_id: uuid.UUID | None = None
    class_id: uuid.UUID | None = None
    max_consecutive: int = Field(ge=1)

    @model_validator(mode="after")
    def _single_target(self) -> "ConsecutivePeriodLimitParams":
        if self.teacher_id is not None and self.class_id is not None:
            raise ValueError("ConsecutivePeriodLimit targets a teacher or a class, not both")
        return self


class CustomParams(_Params):
    kind: Literal["Custom"] = "Custom"
    payload: dict[str, Any]


ConstraintParameters = Annotated[
    Union[
        TeacherAvailabilityParams,
        RoomCapacityParams,
        SubjectWeeklyFrequencyParams,
        ConsecutivePeriodLimitParams,
        CustomParams,
    ],
    Field(discriminator="kind"),
]

_PARAMETERS_ADAPTER: TypeAdapter[ConstraintParameters] = TypeAdapter(ConstraintParameters)

# Which scopes each kind may be declared with.
ALLOWED_SCOPES: dict[str, frozenset[str]] = {
    "TeacherAvailability": frozenset({"teacher"}),
    "RoomCapacity": frozenset({"room", "global"}),
    "SubjectWeeklyFrequency": frozenset({"subject", "class"}),
    "ConsecutivePeriodLimit": frozenset({"teacher", "class", "global"}),
    "Custom": frozenset({"teacher", "room", "subject", "class", "global"}),
}


def parse_parameters(kind: str, raw: dict[str, Any]) -> ConstraintParameters:
    """Rebuild typed parameters from their stored JSON form (kind lives in its own column)."""
    return _PARAMETERS_ADAPTER.validate_python({**(raw or {}), "kind": kind})


def dump_parameters(params: ConstraintParameters) -> dict[str, Any]:
    return params.model_dump(mode="json", exclude={"kind"})


def referenced_ids(params: ConstraintParameters) -> dict[str, uuid.UUID]:
    """Entity references carried by ``params``, keyed by entity kind."""
    refs: dict[str, uuid.UUID] = {}
    for name in ("teacher_id", "room_id", "subject_id", "class_id"):
        value = getattr(params, name, None)
        if value is not None:
            refs[name.removesuffix("_id")] = value
    return refs


def scope_target_errors(scope: str, params: ConstraintParameters) -> list[str]:
    errors: list[str] = []
    kind = params.kind
    if scope not in ALLOWED_SCOPES[kind]:
        errors.append(f"{kind} cannot be declared with scope '{scope}'")
        return errors
    if kind == "RoomCapacity" and scope == "room" and params.room_id is None:
        errors.append("RoomCapacity with scope 'room' requires room_id")
    if kind == "RoomCapacity" and scope == "global" and params.room_id is not None:
        errors.append("RoomCapacity with scope 'global' must not name a room_id")
    if kind == "SubjectWeeklyFrequency" and scope == "class" and params.class_id is None:
        errors.append("SubjectWeeklyFrequency with scope 'class' requires class_id")
    if kind == "ConsecutivePeriodLimit":
        if scope == "teacher" and params.teacher_id is None:
            errors.append("ConsecutivePeriodLimit with scope 'teacher' requires teacher_id")
        if scope == "class" and params.class_id is None:
            errors.append("ConsecutivePeriodLimit with scope 'class' requires class_id")
        if scope == "global" and (params.teacher_id is not None or params.class_id is not None):
            errors.append("ConsecutivePeriodLimit with scope 'global' must not name a target")
    return errors


@dataclass(frozen=True)
class ConstraintRule:
    """Immutable view of one active constraint as seen by a solver run."""

    id: uuid.UUID
    scope: str
    kind: str
    is_hard: bool
    weight: float | None
    params: ConstraintParameters
    name: str = ""

    @property
    def penalty_weight(self) -> float:
        return float(self.weight or 0.0)
