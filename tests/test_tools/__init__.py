"""
Test Tools Package
Tests for the tools module (descriptor, scheduler, custom rules, notification gateway)
"""

__all__ = [
    "test_schedule_descriptor",
    "test_scheduler",
    "test_custom_rules",
    "test_notification_gateway",
]
