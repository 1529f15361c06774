from __future__ import annotations

import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field


SuggestionType = Literal["workload_balance", "minimize_gaps", "resource_utilization", "swap"]
CompareCriterion = Literal[
    "workload_balance",
    "room_utilization",
    "conflict_count",
    "constraint_satisfaction",
    "optimization_score",
]


class SuggestionOut(BaseModel):
    id: uuid.UUID
    version_id: uuid.UUID
    type: SuggestionType
    title: str
    description: str
    priority: Literal["low", "medium", "high"]
    estimated_improvement: float
    payload: dict[str, Any]


class ApplyRequest(BaseModel):
    suggestion_ids: list[uuid.UUID] = Field(min_length=1)
    mode: Literal["immediate", "next_generation", "preview"] = "preview"


class ApplyResponse(BaseModel):
    mode: str
    version_id: uuid.UUID
    suggestion_ids: list[uuid.UUID]
    diff: list[dict[str, Any]]
    projected_score: float
    projected_penalty: float
    revision: int | None = None
    records: int | None = None
    new_conflict_ids: list[uuid.UUID] | None = None
    hint_id: uuid.UUID | None = None


class CompareRequest(BaseModel):
    version_ids: list[uuid.UUID] = Field(min_length=2, max_length=5)
    criteria: list[CompareCriterion] | None = None
    weightings: dict[str, float] | None = None
