"""
Reconciliation Service
Keeps reminder occurrences and scheduled notifications aligned with a
medication's schedule.

The coordinator is the only component that calls both the adherence store and
the notification gateway. Every run for one medication is serialized behind a
per-medication lock; different medications reconcile in parallel.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime, date, timedelta
from sqlalchemy.orm import Session

from config import settings
from database import get_db_context
import models
from models import OccurrenceState
from exceptions import CancellationFailed, InvalidTransition, MedicationNotFound, SchedulingUnavailable
from services.adherence_service import AdherenceStore, adherence_store
from tools.notification_gateway import NotificationGateway, NotificationPayload, create_notification_gateway
from tools.schedule_descriptor import DoseSlot, OccurrenceKey, ScheduleDescriptor
from tools.scheduler import RecurrenceEngine, recurrence_engine
from tools.time_utils import local_now


logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """What one reconciliation run changed"""
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
    warnings: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"medication {self.medication_id}: desired={self.desired} created={self.created} "
            f"scheduled={self.scheduled} repaired={self.repaired} pruned={self.pruned} "
            f"cancelled={self.cancelled} removed={self.removed}"
            + (" (reminders unavailable)" if self.reminders_unavailable else "")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "medication_id": self.medication_id,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "desired": self.desired,
            "created": self.created,
            "scheduled": self.scheduled,
            "repaired": self.repaired,
            "pruned": self.pruned,
            "cancelled": self.cancelled,
            "removed": self.removed,
            "reminders_unavailable": self.reminders_unavailable,
            "warnings": self.warnings,
        }


@dataclass
class DriftReport:
    """Differences between recorded handles and what the scheduler holds"""
    checked_at: datetime
    recorded: int = 0
    live: int = 0
    missing: List[str] = field(default_factory=list)   # recorded on future PENDING rows, unknown to scheduler
    orphaned: List[str] = field(default_factory=list)  # live in scheduler, recorded nowhere
    stale: List[str] = field(default_factory=list)     # still recorded on TAKEN/SKIPPED rows
    repaired: bool = False

    @property
    def in_sync(self) -> bool:
        return not (self.missing or self.orphaned or self.stale)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "recorded": self.recorded,
            "live": self.live,
            "missing": self.missing,
            "orphaned": self.orphaned,
            "stale": self.stale,
            "in_sync": self.in_sync,
            "repaired": self.repaired,
        }


class ReconciliationCoordinator:
    """
    Orchestrates recurrence expansion, adherence state and notification scheduling
    """

    def __init__(
        self,
        store: Optional[AdherenceStore] = None,
        gateway: Optional[NotificationGateway] = None,
        engine: Optional[RecurrenceEngine] = None,
        horizon_days: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store or adherence_store
        self.engine = engine or recurrence_engine
        self.horizon_days = horizon_days or settings.RECONCILE_HORIZON_DAYS
        self._gateway = gateway
        self._clock = clock or local_now

        # medication_id -> lock, dropped once nobody holds or waits on it
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    @property
    def gateway(self) -> NotificationGateway:
        if self._gateway is None:
            self._gateway = create_notification_gateway()
        return self._gateway

    def now(self) -> datetime:
        return self._clock()

    def horizon(self, today: date) -> Tuple[date, date]:
        """Materialization window: horizon_days days starting today"""
        return today, today + timedelta(days=self.horizon_days - 1)

    @asynccontextmanager
    async def _serialized(self, medication_id: int) -> AsyncIterator[None]:
        lock = self._locks.get(medication_id)
        if lock is None:
            lock = self._locks[medication_id] = asyncio.Lock()
        self._lock_users[medication_id] = self._lock_users.get(medication_id, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._lock_users[medication_id] -= 1
            if self._lock_users[medication_id] == 0:
                del self._lock_users[medication_id]
                del self._locks[medication_id]

    def is_busy(self, medication_id: int) -> bool:
        """Whether a run for this medication is in flight or queued"""
        return medication_id in self._locks

    async def aclose(self) -> None:
        """Release the gateway's transport, if one was created and holds one"""
        close = getattr(self._gateway, "aclose", None)
        if close is not None:
            await close()

    # ==================== CREATE / EDIT ====================

    async def reconcile_medication(
        self,
        medication_id: int,
        descriptor: Optional[ScheduleDescriptor] = None,
        db: Optional[Session] = None
    ) -> ReconciliationReport:
        """
        Align occurrences and notifications with a medication's schedule

        Call after a medication is created or its schedule edited. Safe to call
        any number of times: existing occurrences are never duplicated or
        overwritten and resolved history is never touched.

        Args:
            medication_id: Medication ID
            descriptor: New schedule (default: the one stored on the medication)
            db: Database session

        Returns:
            ReconciliationReport describing what changed
        """
        async with self._serialized(medication_id):
            if db is not None:
                return await self._reconcile(medication_id, descriptor, db)

            with get_db_context() as session:
                return await self._reconcile(medication_id, descriptor, session)

    async def _reconcile(
        self,
        medication_id: int,
        descriptor: Optional[ScheduleDescriptor],
        session: Session
    ) -> ReconciliationReport:
        medication = await self.store.get_medication(medication_id, db=session)
        if medication is None:
            raise MedicationNotFound(medication_id)
        if descriptor is None:
            descriptor = ScheduleDescriptor.from_medication(medication)

        now = self.now()
        window_start, window_end = self.horizon(now.date())
        report = ReconciliationReport(medication_id, window_start, window_end)

        # Expansion is synchronous and pure, no awaits in between
        slots = self.engine.expand(descriptor, window_start, window_end) if medication.is_active else []
        desired: Set[OccurrenceKey] = {OccurrenceKey.for_slot(medication_id, slot) for slot in slots}
        report.desired = len(desired)
        notify = medication.is_active and bool(medication.reminder_enabled)

        # Prune future PENDING rows the schedule no longer produces
        for occurrence in await self.store.list_pending(medication_id, db=session):
            key = occurrence.key
            if key in desired:
                if not notify and occurrence.notification_handle:
                    if await self._cancel_quietly(occurrence.notification_handle, report):
                        await self.store.set_notification_handle(key, None, db=session)
                        report.cancelled += 1
                continue
            if occurrence.instant <= now:
                continue

            if occurrence.notification_handle:
                # Keep the row and its handle so the next run retries the cancel
                if not await self._cancel_quietly(occurrence.notification_handle, report):
                    continue
                report.cancelled += 1
            await self.store.delete_occurrence(key, db=session)
            report.pruned += 1

        # Materialize desired occurrences, schedule the new (or handle-less) future ones
        for key in sorted(desired):
            occurrence, created = await self.store.upsert_if_absent(key, db=session)
            if created:
                report.created += 1

            if (
                not notify
                or report.reminders_unavailable
                or occurrence.state != OccurrenceState.PENDING
                or occurrence.notification_handle
                or key.instant <= now
            ):
                continue

            if await self._schedule(medication, key, report, session):
                if created:
                    report.scheduled += 1
                else:
                    report.repaired += 1

        # Resolved rows must not keep a live notification
        for occurrence in await self.store.list_with_handles(medication_id, db=session):
            if occurrence.state.is_terminal:
                if await self._cancel_quietly(occurrence.notification_handle, report):
                    await self.store.set_notification_handle(occurrence.key, None, db=session)
                    report.cancelled += 1

        logger.info(f"Reconciled {report.summary()}")
        return report

    async def reconcile_all(
        self,
        db: Optional[Session] = None
    ) -> List[ReconciliationReport]:
        """Reconcile every medication, one after another on a shared session"""
        async def _all(session: Session) -> List[ReconciliationReport]:
            ids = [mid for (mid,) in session.query(models.Medication.id).order_by(models.Medication.id).all()]
            return [await self.reconcile_medication(mid, db=session) for mid in ids]

        if db is not None:
            return await _all(db)

        with get_db_context() as session:
            return await _all(session)

    # ==================== DELETE ====================

    async def remove_medication(
        self,
        medication_id: int,
        db: Optional[Session] = None
    ) -> ReconciliationReport:
        """
        Cancel every live notification of a medication and remove all its occurrences

        The medication row itself belongs to the caller.

        Raises:
            CancellationFailed: a live notification could not be cancelled;
                nothing is deleted so the removal can be retried
        """
        async with self._serialized(medication_id):
            if db is not None:
                return await self._remove(medication_id, db)

            with get_db_context() as session:
                return await self._remove(medication_id, session)

    async def _remove(self, medication_id: int, session: Session) -> ReconciliationReport:
        report = ReconciliationReport(medication_id)

        failed: List[str] = []
        for occurrence in await self.store.list_with_handles(medication_id, db=session):
            if await self._cancel_quietly(occurrence.notification_handle, report):
                report.cancelled += 1
            else:
                failed.append(occurrence.notification_handle)

        if failed:
            logger.warning(f"Keeping medication {medication_id}: {len(failed)} notifications still live")
            raise CancellationFailed(failed[0], f"{len(failed)} notifications could not be cancelled")

        report.removed = await self.store.delete_for_medication(medication_id, db=session)
        logger.info(f"Removed {report.summary()}")
        return report

    # ==================== ADHERENCE ====================

    async def record_adherence(
        self,
        key: OccurrenceKey,
        outcome: Union[OccurrenceState, str],
        resolved_at: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.ReminderOccurrence:
        """
        Mark an occurrence taken or skipped, then cancel its notification

        Raises:
            InvalidTransition: occurrence unknown or already resolved
            ValueError: outcome is not TAKEN or SKIPPED
        """
        outcome = OccurrenceState(outcome)
        if outcome == OccurrenceState.PENDING:
            raise ValueError("Outcome must be taken or skipped")

        async with self._serialized(key.medication_id):
            if db is not None:
                return await self._record(key, outcome, resolved_at, db)

            with get_db_context() as session:
                return await self._record(key, outcome, resolved_at, session)

    async def _record(
        self,
        key: OccurrenceKey,
        outcome: OccurrenceState,
        resolved_at: Optional[datetime],
        session: Session
    ) -> models.ReminderOccurrence:
        if outcome == OccurrenceState.TAKEN:
            occurrence = await self.store.mark_taken(key, resolved_at=resolved_at, db=session)
        else:
            occurrence = await self.store.mark_skipped(key, resolved_at=resolved_at, db=session)

        # The transition is committed; cancellation is cleanup from here on
        handle = occurrence.notification_handle
        if handle and await self._cancel_quietly(handle):
            occurrence = await self.store.set_notification_handle(key, None, db=session)

        return occurrence

    async def get_occurrences_for_date(
        self,
        medication_id: Optional[int],
        on_date: Optional[date] = None,
        db: Optional[Session] = None
    ) -> List[models.ReminderOccurrence]:
        """Occurrences for "today's reminders" style views"""
        on_date = on_date or self.now().date()
        return await self.store.list_for_date(medication_id, on_date, db=db)

    async def next_dose(
        self,
        medication_id: int,
        db: Optional[Session] = None
    ) -> Optional[DoseSlot]:
        """Next scheduled dose strictly after now; None when inactive or the schedule has ended"""
        medication = await self.store.get_medication(medication_id, db=db)
        if medication is None:
            raise MedicationNotFound(medication_id)
        if not medication.is_active:
            return None
        return self.engine.next_occurrence(ScheduleDescriptor.from_medication(medication), self.now())

    # ==================== POLICIES ====================

    async def prune_history(
        self,
        retention_days: Optional[int] = None,
        db: Optional[Session] = None
    ) -> int:
        """
        Delete occurrences dated before the retention horizon

        Returns:
            Number of occurrences removed
        """
        retention_days = retention_days if retention_days is not None else settings.HISTORY_RETENTION_DAYS
        cutoff = self.now().date() - timedelta(days=retention_days)

        async def _prune(session: Session) -> int:
            by_medication: Dict[int, List[OccurrenceKey]] = defaultdict(list)
            handles: Dict[OccurrenceKey, Optional[str]] = {}
            for occurrence in await self.store.list_older_than(cutoff, db=session):
                by_medication[occurrence.medication_id].append(occurrence.key)
                handles[occurrence.key] = occurrence.notification_handle

            removed = 0
            for medication_id, keys in by_medication.items():
                async with self._serialized(medication_id):
                    for key in keys:
                        if handles[key] and not await self._cancel_quietly(handles[key]):
                            continue
                        if await self.store.delete_occurrence(key, db=session):
                            removed += 1

            logger.info(f"Pruned {removed} occurrences dated before {cutoff}")
            return removed

        if db is not None:
            return await _prune(db)

        with get_db_context() as session:
            return await _prune(session)

    async def expire_overdue(
        self,
        after_minutes: Optional[int] = None,
        db: Optional[Session] = None
    ) -> int:
        """
        Mark PENDING occurrences overdue by more than after_minutes as SKIPPED

        Disabled (returns 0) unless after_minutes or
        AUTO_EXPIRE_PENDING_AFTER_MINUTES is set.
        """
        if after_minutes is None:
            after_minutes = settings.AUTO_EXPIRE_PENDING_AFTER_MINUTES
        if after_minutes is None:
            return 0

        before = self.now() - timedelta(minutes=after_minutes)

        async def _expire(session: Session) -> int:
            expired = 0
            for occurrence in await self.store.list_overdue_pending(before, db=session):
                try:
                    await self.record_adherence(occurrence.key, OccurrenceState.SKIPPED, db=session)
                    expired += 1
                except InvalidTransition:
                    # Resolved by the user in the meantime
                    logger.debug(f"Occurrence {occurrence.key.label()} already resolved")

            if expired:
                logger.info(f"Expired {expired} overdue occurrences older than {before}")
            return expired

        if db is not None:
            return await _expire(db)

        with get_db_context() as session:
            return await _expire(session)

    async def detect_drift(
        self,
        repair: bool = False,
        db: Optional[Session] = None
    ) -> DriftReport:
        """
        Compare handles recorded on occurrences with the scheduler's pending set

        With repair=True, missing handles are cleared (the next reconciliation
        reschedules them), orphaned ones cancelled and stale ones cancelled and
        cleared.
        """
        now = self.now()

        async def _detect(session: Session) -> DriftReport:
            recorded = await self.store.list_with_handles(db=session)
            live = await self.gateway.list_pending_handles()
            recorded_handles = {o.notification_handle for o in recorded}

            report = DriftReport(checked_at=now, recorded=len(recorded_handles), live=len(live))
            for occurrence in recorded:
                if occurrence.state.is_terminal:
                    report.stale.append(occurrence.notification_handle)
                elif occurrence.instant > now and occurrence.notification_handle not in live:
                    report.missing.append(occurrence.notification_handle)
            report.orphaned = sorted(live - recorded_handles)

            if repair and not report.in_sync:
                by_handle = {o.notification_handle: o for o in recorded}
                for handle in report.missing + report.stale:
                    occurrence = by_handle[handle]
                    async with self._serialized(occurrence.medication_id):
                        if handle in report.stale and not await self._cancel_quietly(handle):
                            continue
                        await self.store.set_notification_handle(occurrence.key, None, db=session)
                for handle in report.orphaned:
                    await self._cancel_quietly(handle)
                report.repaired = True

            if not report.in_sync:
                logger.warning(
                    f"Notification drift: {len(report.missing)} missing, "
                    f"{len(report.orphaned)} orphaned, {len(report.stale)} stale"
                )
            return report

        if db is not None:
            return await _detect(db)

        with get_db_context() as session:
            return await _detect(session)

    # ==================== GATEWAY CALLS ====================

    async def _schedule(
        self,
        medication: models.Medication,
        key: OccurrenceKey,
        report: ReconciliationReport,
        session: Session
    ) -> bool:
        """Schedule one reminder and record its handle; scheduler failures only degrade"""
        payload = NotificationPayload.for_medication(medication, key)
        try:
            handle = await self.gateway.schedule_at(key, key.instant, payload)
        except SchedulingUnavailable as e:
            logger.warning(f"Reminders unavailable for medication {key.medication_id}: {e}")
            report.reminders_unavailable = True
            report.warnings.append(str(e))
            return False
        except Exception as e:
            logger.exception(f"Unexpected scheduler error for {key.label()}")
            report.reminders_unavailable = True
            report.warnings.append(f"Scheduler error: {e}")
            return False

        if handle is None:
            return False

        await self.store.set_notification_handle(key, handle, db=session)
        return True

    async def _cancel_quietly(
        self,
        handle: Optional[str],
        report: Optional[ReconciliationReport] = None
    ) -> bool:
        """Cancel a handle; failures are logged and reported, never raised"""
        if not handle:
            return False
        try:
            await self.gateway.cancel(handle)
        except Exception as e:
            logger.warning(f"Cancelling notification {handle} failed: {e}")
            if report is not None:
                report.warnings.append(f"Cancel failed for {handle}: {e}")
            return False
        return True


# Singleton instance
reconciliation_coordinator = ReconciliationCoordinator()
