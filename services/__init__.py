"""
Services Module
Business logic layer for the DoseSync application
"""

from services.adherence_service import AdherenceStore, adherence_store
from services.reconciliation_service import (
    ReconciliationCoordinator,
    ReconciliationReport,
    DriftReport,
    reconciliation_coordinator,
)
from services.medication_service import MedicationService, medication_service


__all__ = [
    # Service classes
    "AdherenceStore",
    "ReconciliationCoordinator",
    "ReconciliationReport",
    "DriftReport",
    "MedicationService",
    # Singleton instances
    "adherence_store",
    "reconciliation_coordinator",
    "medication_service",
]
