"""
Database Models
SQLAlchemy ORM models for DoseSync
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Date, Enum, Index, UniqueConstraint, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum as PyEnum

from config import TableNames
from database import Base
from tools.schedule_descriptor import FrequencyKind, OccurrenceKey
from tools.time_utils import combine


# ==================== ENUMS ====================

class OccurrenceState(str, PyEnum):
    """Adherence state of a single dose occurrence"""
    PENDING = "pending"
    TAKEN = "taken"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self != OccurrenceState.PENDING


class MedicationStatus(str, PyEnum):
    """Lifecycle of a prescribed medication"""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class MedicationForm(str, PyEnum):
    """Dosage form"""
    TABLET = "tablet"
    CAPSULE = "capsule"
    LIQUID = "liquid"
    INJECTION = "injection"
    CREAM = "cream"
    DROPS = "drops"
    INHALER = "inhaler"
    PATCH = "patch"
    POWDER = "powder"
    OTHER = "other"


class NotificationStatus(str, PyEnum):
    """Status of a server-side scheduled notification"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ==================== MODELS ====================

class Medication(Base):
    """Medication with its schedule descriptor fields"""
    __tablename__ = TableNames.MEDICATIONS

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, index=True)  # Owner in the surrounding application

    # Drug info
    name = Column(String(255), nullable=False)
    dosage = Column(String(100), nullable=False)  # e.g., "10mg"
    form = Column(Enum(MedicationForm), default=MedicationForm.TABLET)
    instructions = Column(Text)
    notes = Column(Text)
    prescribed_by = Column(String(255))

    # Schedule descriptor (replaced wholesale on edit)
    frequency = Column(Enum(FrequencyKind), nullable=False)
    times = Column(JSON, default=list)  # ["08:00", "20:00"]
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    days_of_week = Column(JSON, default=list)  # 0 = Sunday ... 6 = Saturday
    custom_rule = Column(JSON)

    # Status
    status = Column(Enum(MedicationStatus), default=MedicationStatus.ACTIVE, nullable=False)
    reminder_enabled = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    occurrences = relationship(
        "ReminderOccurrence",
        back_populates="medication",
        cascade="all, delete-orphan",
        passive_deletes=True
    )

    __table_args__ = (
        Index("ix_medications_patient_status", "patient_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == MedicationStatus.ACTIVE


class ReminderOccurrence(Base):
    """One concrete dose instant and its adherence state"""
    __tablename__ = TableNames.REMINDER_OCCURRENCES

    id = Column(Integer, primary_key=True, index=True)
    medication_id = Column(Integer, ForeignKey(f"{TableNames.MEDICATIONS}.id", ondelete="CASCADE"), nullable=False)

    # Identity: (medication_id, occurrence_date, occurrence_time)
    occurrence_date = Column(Date, nullable=False)
    occurrence_time = Column(String(5), nullable=False)  # "HH:MM"

    state = Column(Enum(OccurrenceState), default=OccurrenceState.PENDING, nullable=False)
    notification_handle = Column(String(255))

    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime)

    # Relationships
    medication = relationship("Medication", back_populates="occurrences")

    __table_args__ = (
        UniqueConstraint("medication_id", "occurrence_date", "occurrence_time", name="uq_occurrence_identity"),
        Index("ix_occurrences_date", "occurrence_date"),
        Index("ix_occurrences_medication_state", "medication_id", "state"),
    )

    @property
    def key(self) -> OccurrenceKey:
        return OccurrenceKey(self.medication_id, self.occurrence_date, self.occurrence_time)

    @property
    def instant(self) -> datetime:
        return combine(self.occurrence_date, self.occurrence_time)


class ScheduledNotification(Base):
    """Notification held by the server-side scheduler until it is due"""
    __tablename__ = TableNames.SCHEDULED_NOTIFICATIONS

    handle = Column(String(64), primary_key=True)
    medication_id = Column(Integer, index=True, nullable=False)
    occurrence_date = Column(Date, nullable=False)
    occurrence_time = Column(String(5), nullable=False)

    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON, default=dict)

    fire_at = Column(DateTime, nullable=False)
    status = Column(Enum(NotificationStatus), default=NotificationStatus.PENDING, nullable=False)
    error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_scheduled_notifications_status_fire_at", "status", "fire_at"),
    )
