"""
Medication Schemas
Pydantic models for medication-related API requests and responses
"""

from typing import Optional, List, Dict, Any, Union
from datetime import datetime, date
from pydantic import BaseModel, Field, ConfigDict

from models import MedicationForm, MedicationStatus
from tools.schedule_descriptor import FrequencyKind


# ==================== BASE SCHEMAS ====================

class MedicationBase(BaseModel):
    """Base medication schema"""
    name: str = Field(..., min_length=1, max_length=255)
    dosage: str = Field(..., min_length=1, max_length=100)
    frequency: FrequencyKind


# ==================== REQUEST SCHEMAS ====================

class MedicationCreate(MedicationBase):
    """Schema for creating a new medication"""
    patient_id: Optional[int] = None
    form: MedicationForm = MedicationForm.TABLET
    instructions: Optional[str] = None
    notes: Optional[str] = None
    prescribed_by: Optional[str] = Field(None, max_length=255)
    times: List[str] = Field(default_factory=list, description="Times of day as HH:MM")
    start_date: date
    end_date: Optional[date] = None
    days_of_week: List[int] = Field(default_factory=list, description="0 = Sunday ... 6 = Saturday")
    custom_rule: Optional[Union[Dict[str, Any], str]] = None
    reminder_enabled: bool = True


class MedicationUpdate(BaseModel):
    """Schema for updating medication details and/or its schedule"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    dosage: Optional[str] = Field(None, min_length=1, max_length=100)
    form: Optional[MedicationForm] = None
    instructions: Optional[str] = None
    notes: Optional[str] = None
    prescribed_by: Optional[str] = Field(None, max_length=255)
    patient_id: Optional[int] = None
    frequency: Optional[FrequencyKind] = None
    times: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    days_of_week: Optional[List[int]] = None
    custom_rule: Optional[Union[Dict[str, Any], str]] = None
    status: Optional[MedicationStatus] = None
    reminder_enabled: Optional[bool] = None


# ==================== RESPONSE SCHEMAS ====================

class MedicationResponse(MedicationBase):
    """Schema for medication response"""
    id: int
    patient_id: Optional[int] = None
    form: Optional[MedicationForm] = None
    instructions: Optional[str] = None
    notes: Optional[str] = None
    prescribed_by: Optional[str] = None
    times: List[str] = []
    start_date: date
    end_date: Optional[date] = None
    days_of_week: List[int] = []
    custom_rule: Optional[Dict[str, Any]] = None
    status: MedicationStatus
    reminder_enabled: bool = True
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MedicationList(BaseModel):
    """List of medications"""
    medications: List[MedicationResponse]
    total: int
    active_count: int


class ReconciliationReportResponse(BaseModel):
    """What a reconciliation run changed"""
    medication_id: int
    window_start: Optional[date] = None
    window_end: Optional[date] = None
    desired: int = 0
    created: int = 0
    scheduled: int = 0
    repaired: int = 0
    pruned: int = 0
    cancelled: int = 0
    removed: int = 0
    reminders_unavailable: bool = False
    warnings: List[str] = []

    model_config = ConfigDict(from_attributes=True)


class MedicationWithReconciliation(BaseModel):
    """Medication plus the reconciliation triggered by the change"""
    medication: MedicationResponse
    reconciliation: ReconciliationReportResponse
