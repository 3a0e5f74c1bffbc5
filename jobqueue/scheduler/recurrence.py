"""
Recurrence rules for repeating jobs.

Two kinds of rule are supported:
- fixed intervals ("every N seconds"), evaluated with plain interval arithmetic
- 5-field cron patterns, evaluated with calendar arithmetic in UTC

The next occurrence is always computed from the moment the previous run
finished, so occurrences missed while the engine was down collapse into a
single catch-up run.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CRON_ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# Search horizon for the next cron occurrence (covers Feb 29 patterns)
_MAX_SEARCH_DAYS = 366 * 8


class CronExpression:
    """
    Parses and evaluates cron expressions.

    Supports standard 5-field cron syntax:
    minute hour day_of_month month day_of_week

    Special characters:
    - * : any value
    - , : value list separator
    - - : range of values
    - / : step values

    Day of week uses 0-6 with 0 = Sunday (7 is accepted as Sunday too).
    When both day fields are restricted a day matches if either does.

    Examples:
    - "0 * * * *" : every hour
    - "*/15 * * * *" : every 15 minutes
    - "0 3 * * *" : daily at 03:00
    - "0 9-17 * * 1-5" : hourly 9am-5pm weekdays
    """

    def __init__(self, expression: str):
        self.expression = expression.strip()
        source = CRON_ALIASES.get(self.expression.lower(), self.expression)
        parts = source.split()

        if len(parts) != 5:
            raise ValueError(
                f"Invalid cron expression: {expression!r}. "
                "Expected 5 fields (minute hour day month weekday)"
            )

        self.minutes = self._parse_field(parts[0], 0, 59)
        self.hours = self._parse_field(parts[1], 0, 23)
        self.days = self._parse_field(parts[2], 1, 31)
        self.months = self._parse_field(parts[3], 1, 12)
        weekdays = self._parse_field(parts[4], 0, 7)
        if 7 in weekdays:
            weekdays = (weekdays - {7}) | {0}
        self.weekdays = weekdays

        self._day_restricted = parts[2] != "*"
        self._weekday_restricted = parts[4] != "*"

    @staticmethod
    def _parse_field(field: str, min_val: int, max_val: int) -> frozenset[int]:
        """Parse a single cron field."""
        values: set[int] = set()

        for part in field.split(","):
            step = 1
            if "/" in part:
                part, step_text = part.split("/", 1)
                step = int(step_text)
                if step < 1:
                    raise ValueError(f"Invalid step in cron field: {field!r}")

            if part == "*":
                start, end = min_val, max_val
            elif "-" in part:
                start_text, end_text = part.split("-", 1)
                start, end = int(start_text), int(end_text)
            else:
                start = int(part)
                end = max_val if step > 1 else start

            if start < min_val or end > max_val or start > end:
                raise ValueError(
                    f"Cron field {field!r} out of range {min_val}-{max_val}"
                )
            values.update(range(start, end + 1, step))

        return frozenset(values)

    def _day_matches(self, moment: datetime) -> bool:
        # Python weekday(): Monday = 0; cron: Sunday = 0
        cron_weekday = (moment.weekday() + 1) % 7
        day_ok = moment.day in self.days
        weekday_ok = cron_weekday in self.weekdays
        if self._day_restricted and self._weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def matches(self, moment: datetime) -> bool:
        """Check if a datetime matches the expression (to the minute)."""
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_occurrence(self, after: datetime) -> datetime:
        """
        Find the first matching minute strictly after `after`.

        Skips whole months, days and hours that cannot match instead of
        stepping minute by minute.
        """
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        after = after.astimezone(timezone.utc)

        current = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = current + timedelta(days=_MAX_SEARCH_DAYS)

        while current < limit:
            if current.month not in self.months:
                year = current.year + (current.month == 12)
                month = current.month % 12 + 1
                current = current.replace(
                    year=year, month=month, day=1, hour=0, minute=0
                )
                continue
            if not self._day_matches(current):
                current = current.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if current.hour not in self.hours:
                current = current.replace(minute=0) + timedelta(hours=1)
                continue
            if current.minute not in self.minutes:
                current += timedelta(minutes=1)
                continue
            return current

        raise ValueError(f"No next occurrence found for {self.expression!r}")

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"


class Recurrence(BaseModel):
    """
    Rule for re-running a job after each successful run.

    Exactly one of `every_seconds` or `cron` must be set.
    """

    model_config = ConfigDict(frozen=True)

    every_seconds: float | None = Field(default=None, gt=0)
    cron: str | None = None

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: str | None) -> str | None:
        if value is not None:
            CronExpression(value)
        return value

    @model_validator(mode="after")
    def _exactly_one_rule(self) -> "Recurrence":
        if (self.every_seconds is None) == (self.cron is None):
            raise ValueError("Recurrence needs exactly one of every_seconds or cron")
        return self

    def next_after(self, moment: datetime) -> datetime:
        """Next occurrence strictly after `moment`."""
        if self.cron is not None:
            return CronExpression(self.cron).next_occurrence(moment)
        return moment + timedelta(seconds=self.every_seconds or 0)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Recurrence | None":
        if not data:
            return None
        return cls.model_validate(data)
