"""Recurring task scheduling and star rules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from .exceptions import InsufficientStarsError


class FrequencyUnit(str, Enum):
    """Units a recurring task frequency can be expressed in."""

    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"

    @classmethod
    def parse(cls, value: Any) -> Optional["FrequencyUnit"]:
        if value is None or value == "":
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None

    def delta(self, frequency: int) -> timedelta:
        if self is FrequencyUnit.HOURS:
            return timedelta(hours=frequency)
        if self is FrequencyUnit.DAYS:
            return timedelta(days=frequency)
        return timedelta(weeks=frequency)


@dataclass(slots=True)
class TaskSchedule:
    """How often a task comes back after it was completed."""

    frequency: Optional[int] = None
    unit: Optional[FrequencyUnit] = None

    @property
    def recurring(self) -> bool:
        return bool(self.frequency)

    def next_available(self, completed_at: datetime) -> datetime:
        """Return when the task unlocks again; one-off tasks stay at ``completed_at``."""

        if not self.frequency or self.unit is None:
            return completed_at
        return completed_at + self.unit.delta(self.frequency)

    @classmethod
    def from_values(cls, frequency: Any, unit: Any) -> "TaskSchedule":
        try:
            count = int(frequency) if frequency not in (None, "") else None
        except (TypeError, ValueError):
            count = None
        if count is not None and count <= 0:
            count = None
        return cls(frequency=count, unit=FrequencyUnit.parse(unit))


def spend_stars(balance: int, cost: int) -> int:
    """Return the balance left after spending ``cost`` stars."""

    if balance < cost:
        raise InsufficientStarsError("Not enough stars")
    return balance - cost


__all__ = ["FrequencyUnit", "TaskSchedule", "spend_stars"]
