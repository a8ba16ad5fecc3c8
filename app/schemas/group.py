from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional
import re

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

class GroupFormRequest(BaseModel):
    user_ids: list[int] = Field(default_factory=list)
    seed: Optional[int] = None
    optimize: Optional[bool] = None  # None = OPTIMIZE_GROUPS setting

class MeetupFormRequest(GroupFormRequest):
    restaurant_id: int
    date: datetime
    start_time: str  # HH:MM
    end_time: str  # HH:MM

    @field_validator("start_time", "end_time")
    @classmethod
    def _must_be_hh_mm(cls, v: str) -> str:
        if not _TIME_PATTERN.match(v):
            raise ValueError(f"Expected HH:MM, got {v!r}")
        return v

class DiningGroupResponse(BaseModel):
    user_ids: list[int]
    user_count: int
    average_compatibility: float
    is_extended_group: bool
    is_minimum_size_group: bool

class GroupFormResponse(BaseModel):
    total_users: int
    group_count: int
    average_group_size: float
    dropped_user_ids: list[int] = []
    iterations: int
    swaps: int
    converged: bool
    optimized: bool
    groups: list[DiningGroupResponse]

class MeetupFailureResponse(BaseModel):
    group_index: int
    user_ids: list[int]
    error: str

class MeetupFormResponse(GroupFormResponse):
    meetup_ids: list[int] = []
    failures: list[MeetupFailureResponse] = []
