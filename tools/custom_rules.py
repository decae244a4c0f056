"""
Custom Recurrence Rules
Pluggable enumerators for CUSTOM schedule descriptors.

A custom rule is a mapping with a "type" key naming a registered enumerator,
e.g. {"type": "rrule", "rrule": "FREQ=DAILY;INTERVAL=2"}. The recurrence engine
never interprets the rule itself: it asks the enumerator for (date, time) pairs
and clips/sorts whatever comes back.
"""

import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, TYPE_CHECKING
from datetime import datetime, date, time, timedelta

from dateutil.rrule import rrulestr

from exceptions import InvalidDescriptor
from tools.time_utils import coerce_date, normalize_time_of_day

if TYPE_CHECKING:
    from tools.schedule_descriptor import ScheduleDescriptor


logger = logging.getLogger(__name__)


Enumerator = Callable[[Mapping, "ScheduleDescriptor", date, date], Iterable[Tuple[date, str]]]
Validator = Callable[[Mapping], None]


class CustomRuleRegistry:
    """
    Registry of custom rule enumerators keyed by rule type
    """

    def __init__(self):
        self._enumerators: Dict[str, Enumerator] = {}
        self._validators: Dict[str, Validator] = {}

    def register(self, rule_type: str, validator: Optional[Validator] = None):
        """Decorator registering an enumerator (and optional validator) for a rule type"""
        def decorator(func: Enumerator) -> Enumerator:
            if rule_type in self._enumerators:
                logger.warning(f"Replacing custom rule enumerator for '{rule_type}'")
            self._enumerators[rule_type] = func
            if validator is not None:
                self._validators[rule_type] = validator
            return func
        return decorator

    def unregister(self, rule_type: str) -> None:
        self._enumerators.pop(rule_type, None)
        self._validators.pop(rule_type, None)

    @property
    def rule_types(self) -> List[str]:
        return sorted(self._enumerators)

    def validate(self, rule: Mapping) -> None:
        """Raise InvalidDescriptor unless the rule names a known type and passes its validator"""
        if not isinstance(rule, Mapping):
            raise InvalidDescriptor("custom_rule must be an object", field="custom_rule")

        rule_type = rule.get("type")
        if rule_type not in self._enumerators:
            raise InvalidDescriptor(
                f"Unknown custom rule type: {rule_type!r} "
                f"(known: {', '.join(self.rule_types) or 'none'})",
                field="custom_rule"
            )

        validator = self._validators.get(rule_type)
        if validator is None:
            return
        try:
            validator(rule)
        except InvalidDescriptor:
            raise
        except (ValueError, TypeError, KeyError) as e:
            raise InvalidDescriptor(f"Invalid {rule_type} rule: {e}", field="custom_rule") from e

    def enumerate(
        self,
        rule: Mapping,
        descriptor: "ScheduleDescriptor",
        window_start: date,
        window_end: date
    ) -> Iterable[Tuple[date, str]]:
        return self._enumerators[rule["type"]](rule, descriptor, window_start, window_end)


custom_rule_registry = CustomRuleRegistry()
register_enumerator = custom_rule_registry.register


# ==================== BUILT-IN RULES ====================

def _rrule_text(rule: Mapping) -> str:
    text = str(rule["rrule"]).strip()
    if not text.upper().startswith(("RRULE:", "DTSTART")):
        text = f"RRULE:{text}"
    return text


def _validate_rrule(rule: Mapping) -> None:
    # Parsing against a fixed anchor is enough to reject malformed rules
    recurrence = rrulestr(_rrule_text(rule), dtstart=datetime(2000, 1, 1))

    # Occurrences are wall-clock times; a zoned DTSTART cannot be compared with them
    first = next(iter(recurrence), None)
    if first is not None and first.tzinfo is not None:
        raise InvalidDescriptor(
            "rrule DTSTART must not carry a time zone (TZID or UTC)",
            field="custom_rule"
        )


@register_enumerator("rrule", validator=_validate_rrule)
def enumerate_rrule(rule, descriptor, window_start, window_end):
    """RFC 5545 recurrence anchored on the descriptor start date, crossed with its times"""
    recurrence = rrulestr(
        _rrule_text(rule),
        dtstart=datetime.combine(descriptor.start_date, time.min)
    )
    days = recurrence.between(
        datetime.combine(window_start, time.min),
        datetime.combine(window_end, time.max),
        inc=True
    )
    return [(d.date(), t) for d in days for t in descriptor.times_of_day]


def _validate_interval(rule: Mapping) -> None:
    every = rule["every_days"]
    if isinstance(every, bool) or not isinstance(every, int) or every < 1:
        raise InvalidDescriptor("every_days must be a positive integer", field="custom_rule")


@register_enumerator("interval", validator=_validate_interval)
def enumerate_interval(rule, descriptor, window_start, window_end):
    """Every N days counted from the start date"""
    every = rule["every_days"]
    offset = (window_start - descriptor.start_date).days
    if offset <= 0:
        current = descriptor.start_date
    else:
        current = descriptor.start_date + timedelta(days=-(-offset // every) * every)

    pairs = []
    while current <= window_end:
        pairs.extend((current, t) for t in descriptor.times_of_day)
        current += timedelta(days=every)
    return pairs


def _parse_dates_entry(entry) -> Tuple[date, Optional[str]]:
    if isinstance(entry, Mapping):
        return coerce_date(entry["date"]), (
            normalize_time_of_day(entry["time"]) if entry.get("time") else None
        )
    return coerce_date(entry), None


def _validate_dates(rule: Mapping) -> None:
    entries = rule["dates"]
    if not isinstance(entries, list):
        raise InvalidDescriptor("dates must be a list", field="custom_rule")
    for entry in entries:
        _parse_dates_entry(entry)


@register_enumerator("dates", validator=_validate_dates)
def enumerate_dates(rule, descriptor, window_start, window_end):
    """Explicit dates; entries without their own time use every descriptor time"""
    pairs = []
    for entry in rule["dates"]:
        day, at = _parse_dates_entry(entry)
        if at is not None:
            pairs.append((day, at))
        else:
            pairs.extend((day, t) for t in descriptor.times_of_day)
    return pairs
