"""
API Dependencies
Common dependencies for FastAPI endpoints
"""

from fastapi import Depends

from database import get_db


class ServiceDependency:
    """
    Dependency injection for services
    """

    @staticmethod
    def get_reconciliation_coordinator():
        from services.reconciliation_service import reconciliation_coordinator
        return reconciliation_coordinator


# Service dependency instances
services = ServiceDependency()


def get_coordinator():
    """Reconciliation coordinator dependency (overridable in tests)"""
    return services.get_reconciliation_coordinator()


def get_medication_service(coordinator=Depends(get_coordinator)):
    """Medication service bound to the request's coordinator"""
    from services.medication_service import MedicationService
    return MedicationService(coordinator)
