"""
Tools Package
Scheduling building blocks for the DoseSync system
"""

from .schedule_descriptor import (
    FrequencyKind,
    ScheduleDescriptor,
    DoseSlot,
    OccurrenceKey,
    TIMES_PER_DAY,
    WEEKDAY_NAMES
)

from .custom_rules import (
    CustomRuleRegistry,
    custom_rule_registry,
    register_enumerator
)

from .scheduler import (
    RecurrenceEngine,
    recurrence_engine,
    expand
)

__all__ = [
    # Descriptor
    "FrequencyKind",
    "ScheduleDescriptor",
    "DoseSlot",
    "OccurrenceKey",
    "TIMES_PER_DAY",
    "WEEKDAY_NAMES",

    # Custom rules
    "CustomRuleRegistry",
    "custom_rule_registry",
    "register_enumerator",

    # Recurrence
    "RecurrenceEngine",
    "recurrence_engine",
    "expand"
]
