"""
DoseSync Test Suite
===================

This package contains all tests for the DoseSync reminder scheduling engine.

Test Structure:
- test_tools/: Descriptor, recurrence engine, custom rules and notification gateways
- test_services/: Adherence store, reconciliation coordinator and medication service
- test_api/: API endpoint tests for FastAPI routes
- conftest.py: Shared pytest fixtures (in-memory database, fixed clock, in-memory gateway)

Running Tests:
    # Run all tests
    pytest

    # Run specific test module
    pytest tests/test_services/

    # Run only marked tests
    pytest -m "unit"
    pytest -m "api"
"""

# Test configuration
TEST_DATABASE_URL = "sqlite:///:memory:"

__all__ = [
    "TEST_DATABASE_URL",
]
