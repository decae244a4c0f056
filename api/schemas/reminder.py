"""
Reminder Schemas
Pydantic models for reminder occurrences and adherence actions
"""

from typing import Optional, List
from datetime import datetime, date
from pydantic import BaseModel, Field, ConfigDict

from models import OccurrenceState


# ==================== REQUEST SCHEMAS ====================

class AdherenceAction(BaseModel):
    """Optional body for take/skip"""
    resolved_at: Optional[datetime] = None


# ==================== RESPONSE SCHEMAS ====================

class OccurrenceResponse(BaseModel):
    """One reminder occurrence"""
    medication_id: int
    occurrence_date: date
    occurrence_time: str = Field(..., description="24h HH:MM")
    state: OccurrenceState
    notification_handle: Optional[str] = None
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReminderEntry(OccurrenceResponse):
    """Occurrence with display details of its medication"""
    medication_name: Optional[str] = None
    dosage: Optional[str] = None
    instructions: Optional[str] = None


class ReminderList(BaseModel):
    """Reminders for one date"""
    on_date: date
    reminders: List[ReminderEntry]
    total: int
    pending: int
    taken: int
    skipped: int


class OccurrenceWindow(BaseModel):
    """Occurrences of one medication in a date window"""
    medication_id: int
    start_date: date
    end_date: date
    occurrences: List[OccurrenceResponse]


class DriftReportResponse(BaseModel):
    """Handles recorded vs. held by the notification scheduler"""
    checked_at: datetime
    recorded: int
    live: int
    missing: List[str]
    orphaned: List[str]
    stale: List[str]
    in_sync: bool
    repaired: bool = False


class NextDose(BaseModel):
    """Next dose of a medication, if its schedule has one"""
    medication_id: int
    occurrence_date: Optional[date] = None
    occurrence_time: Optional[str] = None
