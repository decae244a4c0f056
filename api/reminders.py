"""
Reminders API Router
Endpoints for today's reminders and dose adherence
"""

from typing import List, Optional
from datetime import date
from fastapi import APIRouter, Body, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_coordinator
from api.schemas.reminder import (
    AdherenceAction,
    DriftReportResponse,
    OccurrenceResponse,
    ReminderEntry,
    ReminderList,
)
from models import OccurrenceState, ReminderOccurrence
from tools.schedule_descriptor import OccurrenceKey
from tools.time_utils import normalize_time_of_day


router = APIRouter(prefix="/reminders", tags=["reminders"])


def _reminder_list(on_date: date, occurrences: List[ReminderOccurrence]) -> ReminderList:
    entries = []
    for occurrence in occurrences:
        entry = ReminderEntry.model_validate(occurrence)
        if occurrence.medication is not None:
            entry.medication_name = occurrence.medication.name
            entry.dosage = occurrence.medication.dosage
            entry.instructions = occurrence.medication.instructions
        entries.append(entry)

    return ReminderList(
        on_date=on_date,
        reminders=entries,
        total=len(entries),
        pending=sum(1 for e in entries if e.state == OccurrenceState.PENDING),
        taken=sum(1 for e in entries if e.state == OccurrenceState.TAKEN),
        skipped=sum(1 for e in entries if e.state == OccurrenceState.SKIPPED)
    )


def _occurrence_key(medication_id: int, occurrence_date: date, occurrence_time: str) -> OccurrenceKey:
    try:
        return OccurrenceKey(medication_id, occurrence_date, normalize_time_of_day(occurrence_time))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )


@router.get("/today", response_model=ReminderList)
async def get_today_reminders(
    medication_id: Optional[int] = Query(None, description="Only this medication"),
    db: Session = Depends(get_db),
    coordinator=Depends(get_coordinator)
):
    """
    Today's reminders, ordered by time
    """
    today = coordinator.now().date()
    occurrences = await coordinator.get_occurrences_for_date(medication_id, today, db=db)
    return _reminder_list(today, occurrences)


@router.get("/drift", response_model=DriftReportResponse)
async def get_drift(
    repair: bool = Query(False, description="Clear missing handles and cancel orphaned ones"),
    db: Session = Depends(get_db),
    coordinator=Depends(get_coordinator)
):
    """
    Compare recorded notification handles with the scheduler's pending set
    """
    report = await coordinator.detect_drift(repair=repair, db=db)
    return DriftReportResponse(**report.to_dict())


@router.get("", response_model=ReminderList)
async def get_reminders_for_date(
    on_date: date = Query(..., alias="date", description="YYYY-MM-DD"),
    medication_id: Optional[int] = Query(None, description="Only this medication"),
    db: Session = Depends(get_db),
    coordinator=Depends(get_coordinator)
):
    """
    Reminders for a given date
    """
    occurrences = await coordinator.get_occurrences_for_date(medication_id, on_date, db=db)
    return _reminder_list(on_date, occurrences)


@router.put("/{medication_id}/{occurrence_date}/{occurrence_time}/take", response_model=OccurrenceResponse)
async def mark_taken(
    medication_id: int,
    occurrence_date: date,
    occurrence_time: str,
    action: Optional[AdherenceAction] = Body(None),
    db: Session = Depends(get_db),
    coordinator=Depends(get_coordinator)
):
    """
    Mark a dose as taken and cancel its notification

    Returns 409 if the dose is unknown or already resolved.
    """
    key = _occurrence_key(medication_id, occurrence_date, occurrence_time)
    return await coordinator.record_adherence(
        key,
        OccurrenceState.TAKEN,
        resolved_at=action.resolved_at if action else None,
        db=db
    )


@router.put("/{medication_id}/{occurrence_date}/{occurrence_time}/skip", response_model=OccurrenceResponse)
async def mark_skipped(
    medication_id: int,
    occurrence_date: date,
    occurrence_time: str,
    action: Optional[AdherenceAction] = Body(None),
    db: Session = Depends(get_db),
    coordinator=Depends(get_coordinator)
):
    """
    Mark a dose as skipped and cancel its notification
    """
    key = _occurrence_key(medication_id, occurrence_date, occurrence_time)
    return await coordinator.record_adherence(
        key,
        OccurrenceState.SKIPPED,
        resolved_at=action.resolved_at if action else None,
        db=db
    )
