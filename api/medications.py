"""
Medications API Router
Endpoints for medication management and reminder reconciliation
"""

from typing import Optional
from datetime import date, timedelta
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_coordinator, get_medication_service
from api.schemas.medication import (
    MedicationCreate,
    MedicationUpdate,
    MedicationResponse,
    MedicationList,
    MedicationWithReconciliation,
    ReconciliationReportResponse,
)
from api.schemas.reminder import NextDose, OccurrenceResponse, OccurrenceWindow
from models import MedicationStatus


router = APIRouter(prefix="/medications", tags=["medications"])


def _with_report(medication, report) -> MedicationWithReconciliation:
    return MedicationWithReconciliation(
        medication=MedicationResponse.model_validate(medication),
        reconciliation=ReconciliationReportResponse(**report.to_dict())
    )


@router.post("/", response_model=MedicationWithReconciliation, status_code=status.HTTP_201_CREATED)
async def create_medication(
    medication_data: MedicationCreate,
    db: Session = Depends(get_db),
    medication_service=Depends(get_medication_service)
):
    """
    Add a new medication and schedule its reminders

    - **frequency**: once, daily, twice_daily, three_times_daily, four_times_daily,
      weekly, monthly, as_needed or custom
    - **times**: times of day as HH:MM
    - **days_of_week**: 0 = Sunday ... 6 = Saturday (weekly only)
    - **custom_rule**: rule object or JSON string (custom only)
    """
    medication, report = await medication_service.add_medication(
        **medication_data.model_dump(),
        db=db
    )
    return _with_report(medication, report)


@router.get("/", response_model=MedicationList)
async def list_medications(
    patient_id: Optional[int] = Query(None, description="Only this patient's medications"),
    active_only: bool = Query(False, description="Only return active medications"),
    db: Session = Depends(get_db),
    medication_service=Depends(get_medication_service)
):
    """
    List medications
    """
    medications = await medication_service.list_medications(
        patient_id=patient_id,
        active_only=active_only,
        db=db
    )

    return MedicationList(
        medications=[MedicationResponse.model_validate(m) for m in medications],
        total=len(medications),
        active_count=sum(1 for m in medications if m.status == MedicationStatus.ACTIVE)
    )


@router.get("/{medication_id}", response_model=MedicationResponse)
async def get_medication(
    medication_id: int,
    db: Session = Depends(get_db),
    medication_service=Depends(get_medication_service)
):
    """
    Get a medication with its schedule
    """
    medication = await medication_service.get_medication(medication_id, db=db)

    if not medication:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Medication {medication_id} not found"
        )

    return medication


@router.put("/{medication_id}", response_model=MedicationWithReconciliation)
async def update_medication(
    medication_id: int,
    medication_data: MedicationUpdate,
    db: Session = Depends(get_db),
    medication_service=Depends(get_medication_service)
):
    """
    Update medication details and/or replace its schedule

    Resolved (taken/skipped) reminders are kept; future pending reminders the
    new schedule no longer produces are cancelled.
    """
    updates = medication_data.model_dump(exclude_unset=True)

    medication, report = await medication_service.update_medication(
        medication_id,
        updates,
        db=db
    )
    return _with_report(medication, report)


@router.delete("/{medication_id}", response_model=ReconciliationReportResponse)
async def delete_medication(
    medication_id: int,
    db: Session = Depends(get_db),
    medication_service=Depends(get_medication_service)
):
    """
    Delete a medication, cancelling all its reminders
    """
    report = await medication_service.delete_medication(medication_id, db=db)
    return ReconciliationReportResponse(**report.to_dict())


@router.post("/{medication_id}/reconcile", response_model=ReconciliationReportResponse)
async def reconcile_medication(
    medication_id: int,
    db: Session = Depends(get_db),
    coordinator=Depends(get_coordinator)
):
    """
    Re-run reconciliation (pull to refresh)

    Idempotent: repairs missing reminders, never duplicates them.
    """
    report = await coordinator.reconcile_medication(medication_id, db=db)
    return ReconciliationReportResponse(**report.to_dict())


@router.get("/{medication_id}/reminders", response_model=OccurrenceWindow)
async def get_medication_reminders(
    medication_id: int,
    start_date: Optional[date] = Query(None, description="Default: today"),
    end_date: Optional[date] = Query(None, description="Default: end of the reconciliation horizon"),
    db: Session = Depends(get_db),
    coordinator=Depends(get_coordinator)
):
    """
    Reminder occurrences of a medication in a date window
    """
    medication = await coordinator.store.get_medication(medication_id, db=db)
    if not medication:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Medication {medication_id} not found"
        )

    default_start, default_end = coordinator.horizon(coordinator.now().date())
    start_date = start_date or default_start
    end_date = end_date or max(default_end, start_date)
    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end_date must not be before start_date"
        )
    if end_date - start_date > timedelta(days=366):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Window may span at most 366 days"
        )

    occurrences = await coordinator.store.list_for_window(medication_id, start_date, end_date, db=db)

    return OccurrenceWindow(
        medication_id=medication_id,
        start_date=start_date,
        end_date=end_date,
        occurrences=[OccurrenceResponse.model_validate(o) for o in occurrences]
    )


@router.get("/{medication_id}/next-dose", response_model=NextDose)
async def get_next_dose(
    medication_id: int,
    db: Session = Depends(get_db),
    coordinator=Depends(get_coordinator)
):
    """
    Next dose after now; empty when the medication is inactive or its schedule ended
    """
    slot = await coordinator.next_dose(medication_id, db=db)

    if slot is None:
        return NextDose(medication_id=medication_id)
    return NextDose(
        medication_id=medication_id,
        occurrence_date=slot.occurrence_date,
        occurrence_time=slot.occurrence_time
    )
