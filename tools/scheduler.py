"""
Recurrence Engine
Expands a schedule descriptor into concrete dose slots for a date window.

Pure and synchronous: no I/O, no clock reads. The same descriptor and window
always produce the same, identically ordered output, which is what lets the
reconciliation coordinator replay it after every edit.
"""

import logging
from typing import Iterable, List, Optional, Tuple
from datetime import datetime, date, time, timedelta

from dateutil.rrule import rrule, DAILY, MONTHLY, MO, TU, WE, TH, FR, SA, SU

from tools.custom_rules import CustomRuleRegistry, custom_rule_registry
from tools.schedule_descriptor import DoseSlot, FrequencyKind, ScheduleDescriptor
from tools.time_utils import normalize_time_of_day


logger = logging.getLogger(__name__)


# Descriptor weekdays are 0 = Sunday ... 6 = Saturday
WEEKDAY_TO_RRULE = {0: SU, 1: MO, 2: TU, 3: WE, 4: TH, 5: FR, 6: SA}

DAILY_KINDS = frozenset({
    FrequencyKind.DAILY,
    FrequencyKind.TWICE_DAILY,
    FrequencyKind.THREE_TIMES_DAILY,
    FrequencyKind.FOUR_TIMES_DAILY,
})


def _day_start(d: date) -> datetime:
    return datetime.combine(d, time.min)


class RecurrenceEngine:
    """
    Turns a ScheduleDescriptor and a date window into ordered DoseSlots
    """

    def __init__(self, registry: Optional[CustomRuleRegistry] = None):
        self.registry = registry or custom_rule_registry

    def expand(
        self,
        descriptor: ScheduleDescriptor,
        window_start: date,
        window_end: date
    ) -> List[DoseSlot]:
        """
        Expand a descriptor over an inclusive date window

        Args:
            descriptor: Validated schedule descriptor
            window_start: First date of interest (inclusive)
            window_end: Last date of interest (inclusive)

        Returns:
            Slots inside [max(window_start, start_date), min(window_end, end_date)],
            sorted by (date, time) with duplicates collapsed
        """
        if window_start > window_end:
            return []

        lo = max(window_start, descriptor.start_date)
        hi = window_end if descriptor.end_date is None else min(window_end, descriptor.end_date)
        if lo > hi:
            return []

        kind = descriptor.frequency_kind

        if kind == FrequencyKind.AS_NEEDED:
            return []

        if kind == FrequencyKind.ONCE:
            pairs = [(descriptor.start_date, descriptor.times_of_day[0])]
        elif kind == FrequencyKind.CUSTOM:
            pairs = self.registry.enumerate(descriptor.custom_rule, descriptor, lo, hi)
        else:
            pairs = [
                (day, t)
                for day in self._dates(descriptor, lo, hi)
                for t in descriptor.times_of_day
            ]

        return self._finalize(pairs, lo, hi)

    def _dates(self, descriptor: ScheduleDescriptor, lo: date, hi: date) -> List[date]:
        """Calendar dates in [lo, hi] on which the descriptor fires"""
        kind = descriptor.frequency_kind

        if kind in DAILY_KINDS:
            recurrence = rrule(DAILY, dtstart=_day_start(lo), until=_day_start(hi))
        elif kind == FrequencyKind.WEEKLY:
            recurrence = rrule(
                DAILY,
                dtstart=_day_start(lo),
                until=_day_start(hi),
                byweekday=[WEEKDAY_TO_RRULE[d] for d in sorted(descriptor.days_of_week)]
            )
        elif kind == FrequencyKind.MONTHLY:
            # bymonthday skips months without that day (31st in February), no clamping
            recurrence = rrule(
                MONTHLY,
                dtstart=_day_start(descriptor.start_date),
                bymonthday=descriptor.start_date.day
            )
            return [d.date() for d in recurrence.between(_day_start(lo), _day_start(hi), inc=True)]
        else:
            raise ValueError(f"No calendar expansion for {kind.value}")

        return [d.date() for d in recurrence]

    def _finalize(
        self,
        pairs: Iterable[Tuple[date, object]],
        lo: date,
        hi: date
    ) -> List[DoseSlot]:
        """Clip to range, normalize times, collapse duplicates and sort"""
        slots = set()
        for day, at in pairs:
            if isinstance(day, datetime):
                day = day.date()
            if lo <= day <= hi:
                slots.add(DoseSlot(day, normalize_time_of_day(at)))
        return sorted(slots)

    def next_occurrence(
        self,
        descriptor: ScheduleDescriptor,
        after: datetime,
        lookahead_days: int = 366
    ) -> Optional[DoseSlot]:
        """First slot strictly after the given instant, within a bounded lookahead"""
        start = after.date()
        for slot in self.expand(descriptor, start, start + timedelta(days=lookahead_days)):
            if slot.instant > after:
                return slot
        return None


# Singleton instance
recurrence_engine = RecurrenceEngine()


def expand(descriptor: ScheduleDescriptor, window_start: date, window_end: date) -> List[DoseSlot]:
    """Convenience function to expand with the default engine"""
    return recurrence_engine.expand(descriptor, window_start, window_end)
