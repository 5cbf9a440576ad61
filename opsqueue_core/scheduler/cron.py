"""OpsQueue Cron Parser - Cron Expression Parser.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set


@dataclass
class CronSchedule:
    """Parsed cron schedule. Weekdays use 0 = Sunday."""

    minutes: Set[int] = field(default_factory=lambda: set(range(60)))
    hours: Set[int] = field(default_factory=lambda: set(range(24)))
    days: Set[int] = field(default_factory=lambda: set(range(1, 32)))
    months: Set[int] = field(default_factory=lambda: set(range(1, 13)))
    weekdays: Set[int] = field(default_factory=lambda: set(range(7)))

    def matches(self, dt: datetime) -> bool:
        """Check if datetime matches schedule."""
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.day in self.days
            and dt.month in self.months
            and (dt.weekday() + 1) % 7 in self.weekdays
        )


class CronParser:
    """Cron expression parser.

    Supports standard 5-field cron expressions:
    - minute (0-59)
    - hour (0-23)
    - day of month (1-31)
    - month (1-12 or jan-dec)
    - day of week (0-7 or sun-sat, 0 and 7 = Sunday)

    A leading seconds field (6 fields) is accepted and ignored, as are
    the @hourly/@daily/@weekly/@monthly shorthands.

    Special characters:
    - * : any value
    - , : value list
    - - : range
    - / : step
    """

    WEEKDAYS = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}
    MONTHS = {"jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
              "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12}
    ALIASES = {
        "@hourly": "0 * * * *",
        "@daily": "0 0 * * *",
        "@midnight": "0 0 * * *",
        "@weekly": "0 0 * * 0",
        "@monthly": "0 0 1 * *",
    }

    def __init__(self, expression: str):
        self.expression = expression
        self.schedule = self._parse(expression)

    def _parse(self, expression: str) -> CronSchedule:
        """Parse cron expression."""
        expression = self.ALIASES.get(expression.strip().lower(), expression)
        parts = expression.strip().split()

        if len(parts) == 5:
            minute, hour, day, month, weekday = parts
        elif len(parts) == 6:
            _, minute, hour, day, month, weekday = parts
        else:
            raise ValueError(f"Invalid cron expression: {expression!r}")

        weekdays = self._parse_field(weekday, 0, 7, self.WEEKDAYS)
        if 7 in weekdays:
            weekdays = (weekdays - {7}) | {0}

        return CronSchedule(
            minutes=self._parse_field(minute, 0, 59),
            hours=self._parse_field(hour, 0, 23),
            days=self._parse_field(day, 1, 31),
            months=self._parse_field(month, 1, 12, self.MONTHS),
            weekdays=weekdays,
        )

    def _parse_field(
        self,
        text: str,
        min_val: int,
        max_val: int,
        names: Optional[Dict[str, int]] = None,
    ) -> Set[int]:
        """Parse a cron field."""
        values: Set[int] = set()

        for part in text.lower().split(","):
            if names:
                for name, val in names.items():
                    part = part.replace(name, str(val))

            step = 1
            if "/" in part:
                part, step_text = part.split("/", 1)
                step = int(step_text)
                if step < 1:
                    raise ValueError(f"Invalid cron step in {text!r}")

            if part == "*":
                start, end = min_val, max_val
            elif "-" in part:
                start_text, end_text = part.split("-", 1)
                start, end = int(start_text), int(end_text)
            else:
                start = int(part)
                end = max_val if step > 1 else start

            if start < min_val or end > max_val or start > end:
                raise ValueError(f"Cron field {text!r} out of range {min_val}-{max_val}")
            values.update(range(start, end + 1, step))

        return values

    def matches(self, dt: datetime) -> bool:
        """Check if datetime matches schedule."""
        return self.schedule.matches(dt)

    def next_run(self, from_time: Optional[datetime] = None) -> datetime:
        """First matching minute strictly after `from_time`."""
        dt = (from_time or datetime.now()).replace(second=0, microsecond=0)
        dt += timedelta(minutes=1)

        # Search minute by minute, bounded to a leap year ahead
        for _ in range(366 * 24 * 60):
            if self.matches(dt):
                return dt
            dt += timedelta(minutes=1)

        raise ValueError(f"No matching time within a year for {self.expression!r}")

    def get_next_runs(self, count: int, from_time: Optional[datetime] = None) -> List[datetime]:
        """Get next N run times."""
        runs = []
        current = from_time

        for _ in range(count):
            current = self.next_run(current)
            runs.append(current)

        return runs


# Maintenance schedule defaults
EVERY_HOUR = "0 * * * *"
DAILY_2AM = "0 2 * * *"
SUNDAY_3AM = "0 3 * * 0"


__all__ = ["CronParser", "CronSchedule", "EVERY_HOUR", "DAILY_2AM", "SUNDAY_3AM"]
