"""
Schedule Descriptor
Immutable description of how often and when a medication is taken
"""

import json
from typing import Any, Dict, FrozenSet, Iterable, Mapping, NamedTuple, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime, date
from enum import Enum

from exceptions import InvalidDescriptor
from tools.custom_rules import custom_rule_registry
from tools.time_utils import coerce_date, combine, normalize_time_of_day


class FrequencyKind(str, Enum):
    """How often a medication is taken"""
    ONCE = "once"
    DAILY = "daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    AS_NEEDED = "as_needed"
    CUSTOM = "custom"

    @classmethod
    def coerce(cls, value: Any) -> "FrequencyKind":
        """Accept an enum member, its value ("twice_daily") or its name ("TWICE_DAILY")"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise InvalidDescriptor(f"Unknown frequency kind: {value!r}", field="frequency_kind")


# Exact number of daily times implied by the multi-dose kinds
TIMES_PER_DAY: Dict[FrequencyKind, int] = {
    FrequencyKind.TWICE_DAILY: 2,
    FrequencyKind.THREE_TIMES_DAILY: 3,
    FrequencyKind.FOUR_TIMES_DAILY: 4,
}

# 0 = Sunday ... 6 = Saturday, as sent by the mobile client
WEEKDAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


class DoseSlot(NamedTuple):
    """A (date, HH:MM) pair produced by the recurrence engine"""
    occurrence_date: date
    occurrence_time: str

    @property
    def instant(self) -> datetime:
        return combine(self.occurrence_date, self.occurrence_time)


class OccurrenceKey(NamedTuple):
    """Identity of a reminder occurrence"""
    medication_id: int
    occurrence_date: date
    occurrence_time: str

    @classmethod
    def for_slot(cls, medication_id: int, slot: DoseSlot) -> "OccurrenceKey":
        return cls(medication_id, slot.occurrence_date, slot.occurrence_time)

    @property
    def slot(self) -> DoseSlot:
        return DoseSlot(self.occurrence_date, self.occurrence_time)

    @property
    def instant(self) -> datetime:
        return combine(self.occurrence_date, self.occurrence_time)

    def label(self) -> str:
        return f"{self.medication_id}/{self.occurrence_date.isoformat()}/{self.occurrence_time}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "medication_id": self.medication_id,
            "occurrence_date": self.occurrence_date.isoformat(),
            "occurrence_time": self.occurrence_time,
        }


def _normalize_times(values: Optional[Iterable]) -> Tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        values = [values]

    times = []
    for value in values:
        try:
            normalized = normalize_time_of_day(value)
        except ValueError as e:
            raise InvalidDescriptor(str(e), field="times_of_day") from e
        if normalized in times:
            raise InvalidDescriptor(f"Duplicate time of day: {normalized}", field="times_of_day")
        times.append(normalized)
    return tuple(times)


def _normalize_days(values: Optional[Iterable]) -> FrozenSet[int]:
    if not values:
        return frozenset()

    days = set()
    for value in values:
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 6:
            raise InvalidDescriptor(
                f"Day of week must be an integer 0-6 (0 = Sunday), got {value!r}",
                field="days_of_week"
            )
        days.add(value)
    return frozenset(days)


def _normalize_rule(value) -> Optional[Dict[str, Any]]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        # The mobile client sends the rule as a JSON string
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise InvalidDescriptor(f"custom_rule is not valid JSON: {e}", field="custom_rule") from e
    if not isinstance(value, Mapping):
        raise InvalidDescriptor("custom_rule must be an object", field="custom_rule")
    return dict(value)


def _normalize_date(value, name: str) -> date:
    try:
        return coerce_date(value)
    except ValueError as e:
        raise InvalidDescriptor(f"Invalid {name}: {value!r}", field=name) from e


@dataclass(frozen=True)
class ScheduleDescriptor:
    """
    Declarative recurrence rule attached to a medication.

    Inputs are normalized on construction (times to HH:MM, ISO strings to dates,
    JSON custom rules to dicts) and every invariant is checked there, so the
    recurrence engine only ever sees valid descriptors. Replaced wholesale when a
    medication schedule is edited.
    """
    frequency_kind: FrequencyKind
    start_date: date
    times_of_day: Tuple[str, ...] = ()
    end_date: Optional[date] = None
    days_of_week: FrozenSet[int] = frozenset()
    custom_rule: Optional[Dict[str, Any]] = field(default=None, hash=False)

    def __post_init__(self):
        kind = FrequencyKind.coerce(self.frequency_kind)
        if self.start_date is None:
            raise InvalidDescriptor("start_date is required", field="start_date")
        start = _normalize_date(self.start_date, "start_date")
        end = _normalize_date(self.end_date, "end_date") if self.end_date is not None else None
        times = _normalize_times(self.times_of_day)
        days = _normalize_days(self.days_of_week)
        rule = _normalize_rule(self.custom_rule)

        object.__setattr__(self, "frequency_kind", kind)
        object.__setattr__(self, "start_date", start)
        object.__setattr__(self, "end_date", end)
        object.__setattr__(self, "times_of_day", times)
        object.__setattr__(self, "days_of_week", days)
        object.__setattr__(self, "custom_rule", rule)

        self._validate()

    def _validate(self) -> None:
        kind = self.frequency_kind

        if self.end_date is not None and self.end_date < self.start_date:
            raise InvalidDescriptor(
                f"end_date {self.end_date} is before start_date {self.start_date}",
                field="end_date"
            )

        if kind != FrequencyKind.AS_NEEDED and not self.times_of_day:
            raise InvalidDescriptor(
                f"times_of_day is required for {kind.value} schedules",
                field="times_of_day"
            )

        expected = TIMES_PER_DAY.get(kind)
        if expected is not None and len(self.times_of_day) != expected:
            raise InvalidDescriptor(
                f"{kind.value} requires exactly {expected} times of day, "
                f"got {len(self.times_of_day)}",
                field="times_of_day"
            )

        if kind == FrequencyKind.WEEKLY and not self.days_of_week:
            raise InvalidDescriptor("days_of_week is required for weekly schedules", field="days_of_week")
        if kind != FrequencyKind.WEEKLY and self.days_of_week:
            raise InvalidDescriptor(
                f"days_of_week only applies to weekly schedules, not {kind.value}",
                field="days_of_week"
            )

        if kind == FrequencyKind.CUSTOM:
            if self.custom_rule is None:
                raise InvalidDescriptor("custom_rule is required for custom schedules", field="custom_rule")
            custom_rule_registry.validate(self.custom_rule)
        elif self.custom_rule is not None:
            raise InvalidDescriptor(
                f"custom_rule only applies to custom schedules, not {kind.value}",
                field="custom_rule"
            )

    @property
    def is_scheduled(self) -> bool:
        """AS_NEEDED descriptors never produce reminders"""
        return self.frequency_kind != FrequencyKind.AS_NEEDED

    @classmethod
    def from_medication(cls, medication) -> "ScheduleDescriptor":
        """Build the descriptor stored on a Medication row"""
        return cls(
            frequency_kind=medication.frequency,
            start_date=medication.start_date,
            times_of_day=tuple(medication.times or ()),
            end_date=medication.end_date,
            days_of_week=frozenset(medication.days_of_week or ()),
            custom_rule=medication.custom_rule,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frequency_kind": self.frequency_kind.value,
            "times_of_day": list(self.times_of_day),
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "days_of_week": sorted(self.days_of_week),
            "custom_rule": self.custom_rule,
        }

    def describe(self) -> str:
        """Short human readable summary"""
        times = ", ".join(self.times_of_day)
        kind = self.frequency_kind
        if kind == FrequencyKind.AS_NEEDED:
            return "As needed"
        if kind == FrequencyKind.ONCE:
            return f"Once on {self.start_date.isoformat()} at {self.times_of_day[0]}"
        if kind == FrequencyKind.WEEKLY:
            days = ", ".join(WEEKDAY_NAMES[d] for d in sorted(self.days_of_week))
            return f"Weekly on {days} at {times}"
        if kind == FrequencyKind.MONTHLY:
            return f"Monthly on day {self.start_date.day} at {times}"
        if kind == FrequencyKind.CUSTOM:
            return f"Custom ({self.custom_rule['type']}) at {times}"
        return f"Daily at {times}"
