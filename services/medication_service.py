"""
Medication Service
Business logic for medication management.

Every change that can affect the schedule (create, edit, status change, delete)
ends with a call into the reconciliation coordinator.
"""

import logging
from typing import Dict, List, Optional, Any, Tuple
from datetime import datetime, date
from sqlalchemy.orm import Session

from database import get_db_context
import models
from exceptions import MedicationNotFound
from services.reconciliation_service import (
    ReconciliationCoordinator,
    ReconciliationReport,
    reconciliation_coordinator,
)
from tools.schedule_descriptor import ScheduleDescriptor


logger = logging.getLogger(__name__)


DETAIL_FIELDS = {
    "name", "dosage", "form", "instructions", "notes",
    "prescribed_by", "patient_id", "status", "reminder_enabled",
}
SCHEDULE_FIELDS = {
    "frequency", "times", "start_date", "end_date", "days_of_week", "custom_rule",
}


def build_descriptor(data: Dict[str, Any]) -> ScheduleDescriptor:
    """Validated descriptor from medication-shaped fields"""
    return ScheduleDescriptor(
        frequency_kind=data.get("frequency"),
        start_date=data.get("start_date"),
        times_of_day=data.get("times") or (),
        end_date=data.get("end_date"),
        days_of_week=data.get("days_of_week") or (),
        custom_rule=data.get("custom_rule"),
    )


def _apply_descriptor(medication: models.Medication, descriptor: ScheduleDescriptor) -> None:
    medication.frequency = descriptor.frequency_kind
    medication.times = list(descriptor.times_of_day)
    medication.start_date = descriptor.start_date
    medication.end_date = descriptor.end_date
    medication.days_of_week = sorted(descriptor.days_of_week)
    medication.custom_rule = descriptor.custom_rule


class MedicationService:
    """
    Service for medication-related operations
    """

    def __init__(self, coordinator: Optional[ReconciliationCoordinator] = None):
        self._coordinator = coordinator

    @property
    def coordinator(self) -> ReconciliationCoordinator:
        return self._coordinator or reconciliation_coordinator

    async def add_medication(
        self,
        name: str,
        dosage: str,
        frequency: str,
        start_date: date,
        times: Optional[List[str]] = None,
        end_date: Optional[date] = None,
        days_of_week: Optional[List[int]] = None,
        custom_rule: Optional[Any] = None,
        patient_id: Optional[int] = None,
        form: Optional[models.MedicationForm] = None,
        instructions: Optional[str] = None,
        notes: Optional[str] = None,
        prescribed_by: Optional[str] = None,
        reminder_enabled: bool = True,
        db: Optional[Session] = None
    ) -> Tuple[models.Medication, ReconciliationReport]:
        """
        Add a new medication and materialize its reminders

        Args:
            name: Medication name
            dosage: Dosage (e.g., "500mg")
            frequency: Frequency kind (e.g., "twice_daily")
            start_date: First day of the schedule
            times: Times of day as HH:MM
            end_date: Last day of the schedule (inclusive)
            days_of_week: 0 = Sunday ... 6 = Saturday (weekly only)
            custom_rule: Rule object or JSON string (custom only)
            db: Database session

        Returns:
            Created Medication and the reconciliation report

        Raises:
            InvalidDescriptor: schedule fields are inconsistent
        """
        descriptor = build_descriptor({
            "frequency": frequency,
            "times": times,
            "start_date": start_date,
            "end_date": end_date,
            "days_of_week": days_of_week,
            "custom_rule": custom_rule,
        })

        def _add(session: Session) -> models.Medication:
            medication = models.Medication(
                patient_id=patient_id,
                name=name,
                dosage=dosage,
                form=form or models.MedicationForm.TABLET,
                instructions=instructions,
                notes=notes,
                prescribed_by=prescribed_by,
                status=models.MedicationStatus.ACTIVE,
                reminder_enabled=reminder_enabled
            )
            _apply_descriptor(medication, descriptor)

            session.add(medication)
            session.commit()
            session.refresh(medication)

            logger.info(f"Added medication {name} ({descriptor.describe()})")
            return medication

        async def _create(session: Session):
            medication = _add(session)
            report = await self.coordinator.reconcile_medication(medication.id, descriptor, db=session)
            session.refresh(medication)
            return medication, report

        if db:
            return await _create(db)

        with get_db_context() as session:
            return await _create(session)

    async def get_medication(
        self,
        medication_id: int,
        db: Optional[Session] = None
    ) -> Optional[models.Medication]:
        """Get medication by ID"""
        def _get(session: Session) -> Optional[models.Medication]:
            return session.query(models.Medication).filter(
                models.Medication.id == medication_id
            ).first()

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def list_medications(
        self,
        patient_id: Optional[int] = None,
        active_only: bool = False,
        db: Optional[Session] = None
    ) -> List[models.Medication]:
        """List medications, optionally for one patient"""
        def _list(session: Session) -> List[models.Medication]:
            query = session.query(models.Medication)

            if patient_id is not None:
                query = query.filter(models.Medication.patient_id == patient_id)
            if active_only:
                query = query.filter(models.Medication.status == models.MedicationStatus.ACTIVE)

            return query.order_by(models.Medication.id).all()

        if db:
            return _list(db)

        with get_db_context() as session:
            return _list(session)

    async def update_medication(
        self,
        medication_id: int,
        updates: Dict[str, Any],
        db: Optional[Session] = None
    ) -> Tuple[models.Medication, ReconciliationReport]:
        """
        Update medication details and/or schedule, then reconcile

        Schedule fields are merged over the stored ones and the resulting
        descriptor replaces the old one as a whole.

        Raises:
            MedicationNotFound: no such medication
            InvalidDescriptor: merged schedule is inconsistent
        """
        async def _update(session: Session):
            medication = session.query(models.Medication).filter(
                models.Medication.id == medication_id
            ).first()

            if not medication:
                raise MedicationNotFound(medication_id)

            descriptor = None
            if updates.keys() & SCHEDULE_FIELDS:
                current = {name: getattr(medication, name) for name in SCHEDULE_FIELDS}
                if "frequency" in updates:
                    # Kind-specific fields do not carry over to a new kind
                    current["days_of_week"] = None
                    current["custom_rule"] = None
                current.update({k: v for k, v in updates.items() if k in SCHEDULE_FIELDS})
                descriptor = build_descriptor(current)
                _apply_descriptor(medication, descriptor)

            for field, value in updates.items():
                if field in DETAIL_FIELDS:
                    setattr(medication, field, value)

            medication.updated_at = datetime.utcnow()
            session.commit()
            session.refresh(medication)

            report = await self.coordinator.reconcile_medication(medication_id, descriptor, db=session)
            session.refresh(medication)
            return medication, report

        if db:
            return await _update(db)

        with get_db_context() as session:
            return await _update(session)

    async def set_status(
        self,
        medication_id: int,
        status: models.MedicationStatus,
        db: Optional[Session] = None
    ) -> Tuple[models.Medication, ReconciliationReport]:
        """Pause, resume, complete or cancel a medication"""
        return await self.update_medication(medication_id, {"status": status}, db=db)

    async def delete_medication(
        self,
        medication_id: int,
        db: Optional[Session] = None
    ) -> ReconciliationReport:
        """
        Cancel every reminder of a medication and delete it with its history

        Raises:
            MedicationNotFound: no such medication
            CancellationFailed: some reminders are still live; the medication is kept
        """
        async def _delete(session: Session) -> ReconciliationReport:
            medication = session.query(models.Medication).filter(
                models.Medication.id == medication_id
            ).first()

            if not medication:
                raise MedicationNotFound(medication_id)

            report = await self.coordinator.remove_medication(medication_id, db=session)

            session.delete(medication)
            session.commit()

            logger.info(f"Deleted medication {medication_id}")
            return report

        if db:
            return await _delete(db)

        with get_db_context() as session:
            return await _delete(session)


# Singleton instance
medication_service = MedicationService()
