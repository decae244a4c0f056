"""
Adherence Store
Persistence-facing state machine for reminder occurrences.

States: PENDING (initial) -> TAKEN | SKIPPED (terminal). Identity is the
(medication_id, occurrence_date, occurrence_time) triple, enforced by a unique
constraint, so replaying the same occurrence set is always safe. The store never
touches the notification scheduler.
"""

import logging
from typing import Callable, List, Optional, Tuple, TypeVar
from datetime import datetime, date
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy import and_, or_

from database import get_db_context
import models
from models import OccurrenceState
from exceptions import InvalidTransition
from tools.schedule_descriptor import OccurrenceKey


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _key_filter(key: OccurrenceKey):
    return and_(
        models.ReminderOccurrence.medication_id == key.medication_id,
        models.ReminderOccurrence.occurrence_date == key.occurrence_date,
        models.ReminderOccurrence.occurrence_time == key.occurrence_time
    )


def _ordered(query):
    return query.order_by(
        models.ReminderOccurrence.occurrence_date,
        models.ReminderOccurrence.occurrence_time,
        models.ReminderOccurrence.medication_id
    )


class AdherenceStore:
    """
    Store for reminder occurrences and their adherence state
    """

    def _run(self, func: Callable[[Session], T], db: Optional[Session]) -> T:
        if db:
            return func(db)

        with get_db_context() as session:
            return func(session)

    # ==================== MEDICATIONS ====================

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

        return self._run(_get, db)

    # ==================== READS ====================

    async def get_occurrence(
        self,
        key: OccurrenceKey,
        db: Optional[Session] = None
    ) -> Optional[models.ReminderOccurrence]:
        """Get occurrence by identity key"""
        def _get(session: Session) -> Optional[models.ReminderOccurrence]:
            return session.query(models.ReminderOccurrence).filter(_key_filter(key)).first()

        return self._run(_get, db)

    async def list_for_window(
        self,
        medication_id: int,
        start_date: date,
        end_date: date,
        db: Optional[Session] = None
    ) -> List[models.ReminderOccurrence]:
        """
        Occurrences of a medication within an inclusive date range

        Returns:
            Occurrences ordered by (date, time)
        """
        def _list(session: Session) -> List[models.ReminderOccurrence]:
            query = session.query(models.ReminderOccurrence).filter(
                and_(
                    models.ReminderOccurrence.medication_id == medication_id,
                    models.ReminderOccurrence.occurrence_date >= start_date,
                    models.ReminderOccurrence.occurrence_date <= end_date
                )
            )
            return _ordered(query).all()

        return self._run(_list, db)

    async def list_occurrences(
        self,
        medication_id: int,
        date_range: Tuple[date, date],
        db: Optional[Session] = None
    ) -> List[models.ReminderOccurrence]:
        """Persistence-interface spelling of list_for_window"""
        start_date, end_date = date_range
        return await self.list_for_window(medication_id, start_date, end_date, db=db)

    async def list_for_date(
        self,
        medication_id: Optional[int],
        on_date: date,
        db: Optional[Session] = None
    ) -> List[models.ReminderOccurrence]:
        """Occurrences on one date, for one medication or all of them"""
        def _list(session: Session) -> List[models.ReminderOccurrence]:
            query = session.query(models.ReminderOccurrence).filter(
                models.ReminderOccurrence.occurrence_date == on_date
            )
            if medication_id is not None:
                query = query.filter(models.ReminderOccurrence.medication_id == medication_id)
            return _ordered(query).all()

        return self._run(_list, db)

    async def list_pending(
        self,
        medication_id: int,
        db: Optional[Session] = None
    ) -> List[models.ReminderOccurrence]:
        """All PENDING occurrences of a medication"""
        def _list(session: Session) -> List[models.ReminderOccurrence]:
            query = session.query(models.ReminderOccurrence).filter(
                and_(
                    models.ReminderOccurrence.medication_id == medication_id,
                    models.ReminderOccurrence.state == OccurrenceState.PENDING
                )
            )
            return _ordered(query).all()

        return self._run(_list, db)

    async def list_with_handles(
        self,
        medication_id: Optional[int] = None,
        db: Optional[Session] = None
    ) -> List[models.ReminderOccurrence]:
        """Occurrences currently carrying a notification handle"""
        def _list(session: Session) -> List[models.ReminderOccurrence]:
            query = session.query(models.ReminderOccurrence).filter(
                models.ReminderOccurrence.notification_handle.isnot(None)
            )
            if medication_id is not None:
                query = query.filter(models.ReminderOccurrence.medication_id == medication_id)
            return _ordered(query).all()

        return self._run(_list, db)

    async def list_overdue_pending(
        self,
        before: datetime,
        db: Optional[Session] = None
    ) -> List[models.ReminderOccurrence]:
        """PENDING occurrences whose instant is at or before the given time"""
        cutoff_date = before.date()
        cutoff_time = before.strftime("%H:%M")

        def _list(session: Session) -> List[models.ReminderOccurrence]:
            # HH:MM is zero padded, so string comparison orders times correctly
            query = session.query(models.ReminderOccurrence).filter(
                and_(
                    models.ReminderOccurrence.state == OccurrenceState.PENDING,
                    or_(
                        models.ReminderOccurrence.occurrence_date < cutoff_date,
                        and_(
                            models.ReminderOccurrence.occurrence_date == cutoff_date,
                            models.ReminderOccurrence.occurrence_time <= cutoff_time
                        )
                    )
                )
            )
            return _ordered(query).all()

        return self._run(_list, db)

    async def list_older_than(
        self,
        cutoff_date: date,
        db: Optional[Session] = None
    ) -> List[models.ReminderOccurrence]:
        """Occurrences dated strictly before cutoff_date, any state"""
        def _list(session: Session) -> List[models.ReminderOccurrence]:
            query = session.query(models.ReminderOccurrence).filter(
                models.ReminderOccurrence.occurrence_date < cutoff_date
            )
            return _ordered(query).all()

        return self._run(_list, db)

    # ==================== WRITES ====================

    async def upsert_if_absent(
        self,
        key: OccurrenceKey,
        db: Optional[Session] = None
    ) -> Tuple[models.ReminderOccurrence, bool]:
        """
        Insert a PENDING occurrence unless the identity already exists

        An existing row is returned untouched whatever its state.

        Returns:
            (occurrence, created)
        """
        def _upsert(session: Session) -> Tuple[models.ReminderOccurrence, bool]:
            existing = session.query(models.ReminderOccurrence).filter(_key_filter(key)).first()
            if existing:
                return existing, False

            occurrence = models.ReminderOccurrence(
                medication_id=key.medication_id,
                occurrence_date=key.occurrence_date,
                occurrence_time=key.occurrence_time,
                state=OccurrenceState.PENDING
            )
            session.add(occurrence)
            try:
                session.commit()
            except IntegrityError:
                # Inserted concurrently by another writer
                session.rollback()
                existing = session.query(models.ReminderOccurrence).filter(_key_filter(key)).one()
                return existing, False

            session.refresh(occurrence)
            return occurrence, True

        return self._run(_upsert, db)

    async def save_occurrence(
        self,
        occurrence: models.ReminderOccurrence,
        db: Optional[Session] = None
    ) -> models.ReminderOccurrence:
        """Persist an occurrence row as-is"""
        def _save(session: Session) -> models.ReminderOccurrence:
            session.add(occurrence)
            session.commit()
            session.refresh(occurrence)
            return occurrence

        return self._run(_save, db)

    async def set_notification_handle(
        self,
        key: OccurrenceKey,
        handle: Optional[str],
        db: Optional[Session] = None
    ) -> Optional[models.ReminderOccurrence]:
        """Record (or clear, with None) the scheduler handle of an occurrence"""
        def _set(session: Session) -> Optional[models.ReminderOccurrence]:
            occurrence = session.query(models.ReminderOccurrence).filter(_key_filter(key)).first()
            if not occurrence:
                return None

            occurrence.notification_handle = handle
            session.commit()
            session.refresh(occurrence)
            return occurrence

        return self._run(_set, db)

    async def delete_occurrence(
        self,
        key: OccurrenceKey,
        db: Optional[Session] = None
    ) -> bool:
        """Delete an occurrence row; returns False if it did not exist"""
        def _delete(session: Session) -> bool:
            deleted = session.query(models.ReminderOccurrence).filter(
                _key_filter(key)
            ).delete(synchronize_session="fetch")
            session.commit()
            return deleted > 0

        return self._run(_delete, db)

    async def delete_for_medication(
        self,
        medication_id: int,
        db: Optional[Session] = None
    ) -> int:
        """Delete every occurrence of a medication; returns the number of rows removed"""
        def _delete(session: Session) -> int:
            deleted = session.query(models.ReminderOccurrence).filter(
                models.ReminderOccurrence.medication_id == medication_id
            ).delete(synchronize_session="fetch")
            session.commit()
            return deleted

        return self._run(_delete, db)

    # ==================== STATE MACHINE ====================

    async def mark_taken(
        self,
        key: OccurrenceKey,
        resolved_at: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.ReminderOccurrence:
        """PENDING -> TAKEN; raises InvalidTransition otherwise"""
        return self._transition(key, OccurrenceState.TAKEN, resolved_at, db)

    async def mark_skipped(
        self,
        key: OccurrenceKey,
        resolved_at: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.ReminderOccurrence:
        """PENDING -> SKIPPED; raises InvalidTransition otherwise"""
        return self._transition(key, OccurrenceState.SKIPPED, resolved_at, db)

    def _transition(
        self,
        key: OccurrenceKey,
        target: OccurrenceState,
        resolved_at: Optional[datetime],
        db: Optional[Session]
    ) -> models.ReminderOccurrence:
        def _apply(session: Session) -> models.ReminderOccurrence:
            # Conditional update: only a PENDING row can move, and only once
            updated = session.query(models.ReminderOccurrence).filter(
                and_(
                    _key_filter(key),
                    models.ReminderOccurrence.state == OccurrenceState.PENDING
                )
            ).update(
                {
                    models.ReminderOccurrence.state: target,
                    models.ReminderOccurrence.resolved_at: resolved_at or datetime.utcnow(),
                },
                synchronize_session=False
            )

            if updated == 0:
                session.rollback()
                current = session.query(models.ReminderOccurrence).filter(_key_filter(key)).first()
                raise InvalidTransition(
                    key.label(),
                    current_state=current.state if current else None,
                    requested_state=target
                )

            session.commit()
            occurrence = session.query(models.ReminderOccurrence).filter(_key_filter(key)).one()
            session.refresh(occurrence)

            logger.info(f"Occurrence {key.label()} marked {target.value}")
            return occurrence

        return self._run(_apply, db)


# Singleton instance
adherence_store = AdherenceStore()
