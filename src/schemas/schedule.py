"""Schedule specification schema."""

from datetime import date, time

from pydantic import BaseModel, Field, field_validator, model_validator

from src.models.enums import ScheduleType

WEEKDAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


class ScheduleSpec(BaseModel):
    """Structured description of how and when a reminder repeats.

    Weekdays follow Python's ``date.weekday()`` numbering (Monday=0). Names such
    as ``"mon"`` or ``"Wednesday"`` are accepted as well.
    """

    type: ScheduleType
    time_of_day: time = time(9, 0)
    weekdays: list[int] = Field(default_factory=list)
    day_of_month: int | None = Field(None, ge=1, le=31)
    interval: int | None = Field(None, ge=1)  # days
    start_date: date | None = None
    end_date: date | None = None
    max_occurrences: int | None = Field(None, ge=1)
    excluded_dates: list[date] = Field(default_factory=list)
    cron_expression: str | None = Field(None, max_length=255)

    @field_validator("weekdays", mode="before")
    @classmethod
    def parse_weekdays(cls, value):
        """Accept weekday names and deduplicate/sort."""
        if value is None:
            return []
        days = set()
        for day in value:
            if isinstance(day, str):
                key = day.strip().lower()[:3]
                if key not in WEEKDAY_NAMES:
                    raise ValueError(f"Unknown weekday: {day}")
                days.add(WEEKDAY_NAMES.index(key))
            else:
                if not 0 <= int(day) <= 6:
                    raise ValueError(f"Weekday out of range (0=Monday..6=Sunday): {day}")
                days.add(int(day))
        return sorted(days)

    @model_validator(mode="after")
    def validate_rule_fields(self) -> "ScheduleSpec":
        """Check that each schedule type has the fields it needs."""
        if self.type == ScheduleType.WEEKLY and not self.weekdays:
            raise ValueError("Weekly schedules need at least one weekday")
        if self.type == ScheduleType.INTERVAL and not self.interval:
            raise ValueError("Interval schedules need an interval in days")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date cannot be before start_date")
        return self

    def to_storage(self) -> dict:
        """Serialize for the JSON column."""
        return self.model_dump(mode="json")
