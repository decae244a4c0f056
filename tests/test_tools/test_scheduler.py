"""
Tests for Recurrence Engine
Tests expansion of schedule descriptors into dose slots
"""

import pytest
from datetime import datetime, date, timedelta

from tools.scheduler import RecurrenceEngine, expand
from tools.custom_rules import CustomRuleRegistry
from tools.schedule_descriptor import DoseSlot, FrequencyKind, ScheduleDescriptor


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def engine():
    """Create recurrence engine instance"""
    return RecurrenceEngine()


@pytest.fixture
def twice_daily():
    """Twice-daily descriptor starting 2024-01-01"""
    return ScheduleDescriptor(
        frequency_kind=FrequencyKind.TWICE_DAILY,
        start_date=date(2024, 1, 1),
        times_of_day=("08:00", "20:00")
    )


# =============================================================================
# Daily Kinds
# =============================================================================

class TestDailyExpansion:
    """Tests for DAILY and the multi-dose daily kinds"""

    @pytest.mark.unit
    def test_daily_three_day_window(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.DAILY,
            start_date=date(2024, 1, 1),
            times_of_day=("08:00",)
        )

        slots = engine.expand(descriptor, date(2024, 1, 1), date(2024, 1, 3))

        assert slots == [
            DoseSlot(date(2024, 1, 1), "08:00"),
            DoseSlot(date(2024, 1, 2), "08:00"),
            DoseSlot(date(2024, 1, 3), "08:00"),
        ]

    @pytest.mark.unit
    def test_twice_daily_ordered_by_date_then_time(self, engine, twice_daily):
        slots = engine.expand(twice_daily, date(2024, 1, 1), date(2024, 1, 2))

        assert [(s.occurrence_date.day, s.occurrence_time) for s in slots] == [
            (1, "08:00"), (1, "20:00"), (2, "08:00"), (2, "20:00")
        ]

    @pytest.mark.unit
    def test_times_given_out_of_order_are_sorted(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.THREE_TIMES_DAILY,
            start_date=date(2024, 1, 1),
            times_of_day=("21:00", "07:00", "13:00")
        )

        slots = engine.expand(descriptor, date(2024, 1, 1), date(2024, 1, 1))

        assert [s.occurrence_time for s in slots] == ["07:00", "13:00", "21:00"]

    @pytest.mark.unit
    def test_window_clipped_to_start_and_end_date(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.DAILY,
            start_date=date(2024, 1, 5),
            end_date=date(2024, 1, 7),
            times_of_day=("09:00",)
        )

        slots = engine.expand(descriptor, date(2024, 1, 1), date(2024, 1, 31))

        assert [s.occurrence_date for s in slots] == [
            date(2024, 1, 5), date(2024, 1, 6), date(2024, 1, 7)
        ]

    @pytest.mark.unit
    def test_window_outside_range_is_empty(self, engine, twice_daily):
        assert engine.expand(twice_daily, date(2023, 12, 1), date(2023, 12, 31)) == []

    @pytest.mark.unit
    def test_inverted_window_is_empty(self, engine, twice_daily):
        assert engine.expand(twice_daily, date(2024, 1, 5), date(2024, 1, 1)) == []

    @pytest.mark.unit
    def test_deterministic(self, engine, twice_daily):
        first = engine.expand(twice_daily, date(2024, 1, 1), date(2024, 3, 1))
        second = engine.expand(twice_daily, date(2024, 1, 1), date(2024, 3, 1))

        assert first == second
        assert len(first) == len(set(first))


# =============================================================================
# Weekly / Monthly / Once / As Needed
# =============================================================================

class TestCalendarExpansion:
    """Tests for the calendar based kinds"""

    @pytest.mark.unit
    def test_weekly_monday_wednesday(self, engine):
        # 2024-01-07 is a Sunday
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.WEEKLY,
            start_date=date(2024, 1, 7),
            times_of_day=("08:00", "20:00"),
            days_of_week={1, 3}
        )

        slots = engine.expand(descriptor, date(2024, 1, 7), date(2024, 1, 13))

        assert len(slots) == 4
        assert {s.occurrence_date for s in slots} == {date(2024, 1, 8), date(2024, 1, 10)}

    @pytest.mark.unit
    def test_weekly_sunday_is_zero(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.WEEKLY,
            start_date=date(2024, 1, 1),
            times_of_day=("10:00",),
            days_of_week=[0]
        )

        slots = engine.expand(descriptor, date(2024, 1, 1), date(2024, 1, 31))

        assert [s.occurrence_date.day for s in slots] == [7, 14, 21, 28]
        assert all(s.occurrence_date.weekday() == 6 for s in slots)

    @pytest.mark.unit
    def test_monthly_skips_short_months(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.MONTHLY,
            start_date=date(2024, 1, 31),
            times_of_day=("09:00",)
        )

        slots = engine.expand(descriptor, date(2024, 1, 1), date(2024, 3, 31))

        assert [s.occurrence_date for s in slots] == [date(2024, 1, 31), date(2024, 3, 31)]

    @pytest.mark.unit
    def test_monthly_window_starting_mid_month(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.MONTHLY,
            start_date=date(2024, 1, 15),
            times_of_day=("09:00",)
        )

        slots = engine.expand(descriptor, date(2024, 2, 16), date(2024, 4, 15))

        assert [s.occurrence_date for s in slots] == [date(2024, 3, 15), date(2024, 4, 15)]

    @pytest.mark.unit
    def test_once_inside_window(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.ONCE,
            start_date=date(2024, 2, 1),
            times_of_day=("14:30",)
        )

        assert engine.expand(descriptor, date(2024, 1, 1), date(2024, 3, 1)) == [
            DoseSlot(date(2024, 2, 1), "14:30")
        ]
        assert engine.expand(descriptor, date(2024, 2, 2), date(2024, 3, 1)) == []

    @pytest.mark.unit
    def test_as_needed_never_produces_slots(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.AS_NEEDED,
            start_date=date(2024, 1, 1)
        )

        assert engine.expand(descriptor, date(2024, 1, 1), date(2024, 12, 31)) == []


# =============================================================================
# Custom Rules
# =============================================================================

class TestCustomExpansion:
    """Tests for CUSTOM descriptors dispatched to enumerators"""

    @pytest.mark.unit
    def test_custom_interval(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.CUSTOM,
            start_date=date(2024, 1, 1),
            times_of_day=("08:00",),
            custom_rule={"type": "interval", "every_days": 3}
        )

        slots = engine.expand(descriptor, date(2024, 1, 2), date(2024, 1, 10))

        assert [s.occurrence_date.day for s in slots] == [4, 7, 10]

    @pytest.mark.unit
    def test_custom_rrule_every_other_day(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.CUSTOM,
            start_date=date(2024, 1, 1),
            times_of_day=("08:00",),
            custom_rule='{"type": "rrule", "rrule": "FREQ=DAILY;INTERVAL=2"}'
        )

        slots = engine.expand(descriptor, date(2024, 1, 1), date(2024, 1, 7))

        assert [s.occurrence_date.day for s in slots] == [1, 3, 5, 7]

    @pytest.mark.unit
    def test_custom_results_are_clipped_and_deduplicated(self):
        registry = CustomRuleRegistry()

        @registry.register("noisy")
        def noisy(rule, descriptor, window_start, window_end):
            return [
                (date(2023, 12, 31), "08:00"),
                (date(2024, 1, 2), "8:00"),
                (date(2024, 1, 2), "08:00"),
                (datetime(2024, 1, 1, 0, 0), "07:00"),
            ]

        engine = RecurrenceEngine(registry=registry)
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.DAILY,
            start_date=date(2024, 1, 1),
            times_of_day=("08:00",)
        )
        # Swap in the custom kind without re-validating against the default registry
        object.__setattr__(descriptor, "frequency_kind", FrequencyKind.CUSTOM)
        object.__setattr__(descriptor, "custom_rule", {"type": "noisy"})

        slots = engine.expand(descriptor, date(2024, 1, 1), date(2024, 1, 5))

        assert slots == [
            DoseSlot(date(2024, 1, 1), "07:00"),
            DoseSlot(date(2024, 1, 2), "08:00"),
        ]


# =============================================================================
# Helpers
# =============================================================================

class TestNextOccurrence:
    """Tests for next_occurrence lookup"""

    @pytest.mark.unit
    def test_next_occurrence_same_day(self, engine, twice_daily):
        slot = engine.next_occurrence(twice_daily, datetime(2024, 1, 3, 9, 0))

        assert slot == DoseSlot(date(2024, 1, 3), "20:00")

    @pytest.mark.unit
    def test_next_occurrence_is_strictly_after(self, engine, twice_daily):
        slot = engine.next_occurrence(twice_daily, datetime(2024, 1, 3, 20, 0))

        assert slot == DoseSlot(date(2024, 1, 4), "08:00")

    @pytest.mark.unit
    def test_next_occurrence_after_end(self, engine):
        descriptor = ScheduleDescriptor(
            frequency_kind=FrequencyKind.DAILY,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 2),
            times_of_day=("08:00",)
        )

        assert engine.next_occurrence(descriptor, datetime(2024, 1, 2, 9, 0)) is None

    @pytest.mark.unit
    def test_module_level_expand(self, twice_daily):
        slots = expand(twice_daily, date(2024, 1, 1), date(2024, 1, 1))

        assert len(slots) == 2
        assert slots[0].instant == datetime(2024, 1, 1, 8, 0)
