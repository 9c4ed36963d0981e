from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

Frequency = Literal["daily", "weekly", "monthly", "quarterly", "annually"]


class AssignmentTemplateSpec(BaseModel):
    """What each run instantiates, besides the template itself."""

    client_id: str
    name: str | None = None
    context: dict[str, bool | int | float | str] = Field(default_factory=dict)
    metadata: dict[str, object] = Field(default_factory=dict)


class RecurringSchedule(BaseModel):
    id: str
    name: str
    template_id: str
    # None means "latest published version at run time".
    template_version: int | None = None
    organization_id: str | None = None
    assignment_template: AssignmentTemplateSpec

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    # 0 = Monday ... 6 = Sunday.
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    month_of_year: int | None = Field(default=None, ge=1, le=12)
    time_of_day: str | None = None

    start_date: datetime
    end_date: datetime | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    run_count: int = 0
    is_active: bool = True
    version: int = 0

    @field_validator("start_date", "end_date", "next_run_at", "last_run_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @field_validator("time_of_day")
    @classmethod
    def _check_time_of_day(cls, value: str | None) -> str | None:
        if value is None:
            return None
        parts = value.split(":")
        if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
            raise ValueError("time_of_day must be HH:MM or HH:MM:SS")
        hours, minutes = int(parts[0]), int(parts[1])
        seconds = int(parts[2]) if len(parts) == 3 else 0
        if not (0 <= hours < 24 and 0 <= minutes < 60 and 0 <= seconds < 60):
            raise ValueError("time_of_day is out of range")
        return value
