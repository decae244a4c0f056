"""
Notification Gateway
The only place that talks to a notification scheduler.

Every backend shares the same contract:
- schedule_at() never schedules an instant that is not strictly in the future
- cancel() is idempotent, unknown or already cancelled handles are a no-op
- list_pending_handles() is introspection only, the adherence store stays authoritative
"""

import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Generator, List, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from config import settings, reminder_config
from database import SessionLocal
from exceptions import CancellationFailed, SchedulingUnavailable
from tools.schedule_descriptor import OccurrenceKey
from tools.time_utils import local_now, localize


logger = logging.getLogger(__name__)


Clock = Callable[[], datetime]


@dataclass
class NotificationPayload:
    """What the host application receives when a reminder fires or is tapped"""
    medication_id: int
    occurrence_key: OccurrenceKey
    title: str
    body: str
    category: str = reminder_config.NOTIFICATION_CATEGORY

    @classmethod
    def for_medication(cls, medication, key: OccurrenceKey) -> "NotificationPayload":
        title = reminder_config.NOTIFICATION_TITLE.format(name=medication.name)
        body = reminder_config.NOTIFICATION_BODY.format(
            dosage=medication.dosage,
            instructions=medication.instructions or ""
        ).strip()
        return cls(medication_id=medication.id, occurrence_key=key, title=title, body=body)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "medication_id": self.medication_id,
            "occurrence_key": self.occurrence_key.to_dict(),
            "title": self.title,
            "body": self.body,
            "category": self.category,
        }


class NotificationGateway(ABC):
    """
    Interface to a platform notification scheduler
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or local_now

    async def schedule_at(
        self,
        key: OccurrenceKey,
        firing_instant: datetime,
        payload: NotificationPayload
    ) -> Optional[str]:
        """
        Schedule a reminder

        Returns:
            The scheduler handle, or None when firing_instant is not in the future

        Raises:
            SchedulingUnavailable: the scheduler refused (permission, quota, transport)
        """
        now = self._clock()
        if firing_instant <= now:
            logger.debug(f"Not scheduling {key.label()}: {firing_instant} is not after {now}")
            return None
        return await self._schedule(key, firing_instant, payload)

    async def cancel(self, handle: Optional[str]) -> None:
        """
        Cancel a scheduled reminder; unknown handles are ignored

        Raises:
            CancellationFailed: the scheduler could not be reached or refused
        """
        if not handle:
            return
        await self._cancel(handle)

    @abstractmethod
    async def _schedule(
        self,
        key: OccurrenceKey,
        firing_instant: datetime,
        payload: NotificationPayload
    ) -> str:
        ...

    @abstractmethod
    async def _cancel(self, handle: str) -> None:
        ...

    @abstractmethod
    async def list_pending_handles(self) -> Set[str]:
        ...


# ==================== IN-MEMORY ====================

@dataclass
class ScheduledReminder:
    """A reminder held by the in-memory scheduler"""
    handle: str
    key: OccurrenceKey
    fire_at: datetime
    payload: NotificationPayload
    scheduled_at: datetime = field(default_factory=datetime.utcnow)


class InMemoryNotificationGateway(NotificationGateway):
    """
    Process-local scheduler.

    Used for tests and single-process deployments. Permission and quota can be
    toggled to exercise the degraded paths.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        permission_granted: bool = True,
        quota: Optional[int] = None
    ):
        super().__init__(clock)
        self.permission_granted = permission_granted
        self.quota = quota
        self.fail_cancellations = False
        self.pending: Dict[str, ScheduledReminder] = {}
        self.schedule_calls: List[OccurrenceKey] = []
        self.cancel_calls: List[str] = []

    async def _schedule(self, key, firing_instant, payload) -> str:
        self.schedule_calls.append(key)
        if not self.permission_granted:
            raise SchedulingUnavailable("Notification permission not granted")
        if self.quota is not None and len(self.pending) >= self.quota:
            raise SchedulingUnavailable(f"Notification quota of {self.quota} reached")

        handle = uuid.uuid4().hex
        self.pending[handle] = ScheduledReminder(handle, key, firing_instant, payload)
        return handle

    async def _cancel(self, handle: str) -> None:
        self.cancel_calls.append(handle)
        if self.fail_cancellations:
            raise CancellationFailed(handle, "scheduler unavailable")
        self.pending.pop(handle, None)

    async def list_pending_handles(self) -> Set[str]:
        return set(self.pending)

    def fire_due(self, now: Optional[datetime] = None) -> List[ScheduledReminder]:
        """Deliver (remove) every reminder whose time has come, like the OS would"""
        now = now or self._clock()
        due = [r for r in self.pending.values() if r.fire_at <= now]
        for reminder in due:
            del self.pending[reminder.handle]
        return sorted(due, key=lambda r: r.fire_at)


# ==================== DATABASE ====================

Deliver = Callable[[Dict[str, Any]], Awaitable[None]]


async def _log_delivery(notification: Dict[str, Any]) -> None:
    logger.info(
        f"Reminder due for medication {notification['medication_id']} "
        f"at {notification['occurrence_date']} {notification['occurrence_time']}: "
        f"{notification['title']}"
    )


class DatabaseNotificationGateway(NotificationGateway):
    """
    Server-side scheduler backed by the scheduled_notifications table.

    Rows stay PENDING until dispatch_due() delivers them (SENT or FAILED) or they
    are cancelled.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        clock: Optional[Clock] = None,
        quota: Optional[int] = None
    ):
        super().__init__(clock)
        self._session_factory = session_factory or SessionLocal
        self.quota = quota

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    async def _schedule(self, key, firing_instant, payload) -> str:
        handle = uuid.uuid4().hex
        try:
            with self._session() as session:
                if self.quota is not None:
                    pending = session.query(models.ScheduledNotification).filter(
                        models.ScheduledNotification.status == models.NotificationStatus.PENDING
                    ).count()
                    if pending >= self.quota:
                        raise SchedulingUnavailable(f"Notification quota of {self.quota} reached")

                session.add(models.ScheduledNotification(
                    handle=handle,
                    medication_id=key.medication_id,
                    occurrence_date=key.occurrence_date,
                    occurrence_time=key.occurrence_time,
                    title=payload.title,
                    message=payload.body,
                    payload=payload.to_dict(),
                    fire_at=firing_instant,
                    status=models.NotificationStatus.PENDING
                ))
        except SQLAlchemyError as e:
            raise SchedulingUnavailable(f"Notification store unavailable: {e}") from e

        return handle

    async def _cancel(self, handle: str) -> None:
        try:
            with self._session() as session:
                row = session.get(models.ScheduledNotification, handle)
                if row is not None and row.status == models.NotificationStatus.PENDING:
                    row.status = models.NotificationStatus.CANCELLED
        except SQLAlchemyError as e:
            raise CancellationFailed(handle, str(e)) from e

    async def list_pending_handles(self) -> Set[str]:
        with self._session() as session:
            rows = session.query(models.ScheduledNotification.handle).filter(
                models.ScheduledNotification.status == models.NotificationStatus.PENDING
            ).all()
            return {handle for (handle,) in rows}

    async def dispatch_due(
        self,
        now: Optional[datetime] = None,
        deliver: Optional[Deliver] = None,
        limit: int = reminder_config.DISPATCH_BATCH_SIZE
    ) -> Dict[str, int]:
        """
        Deliver pending notifications whose fire time has passed

        Args:
            now: Reference time (default: scheduler clock)
            deliver: Coroutine receiving each notification as a dict
            limit: Max notifications handled in one call

        Returns:
            Counts of sent and failed notifications
        """
        now = now or self._clock()
        deliver = deliver or _log_delivery
        sent = failed = 0

        with self._session() as session:
            due = session.query(models.ScheduledNotification).filter(
                models.ScheduledNotification.status == models.NotificationStatus.PENDING,
                models.ScheduledNotification.fire_at <= now
            ).order_by(models.ScheduledNotification.fire_at).limit(limit).all()

            for row in due:
                notification = {
                    "handle": row.handle,
                    "medication_id": row.medication_id,
                    "occurrence_date": row.occurrence_date.isoformat(),
                    "occurrence_time": row.occurrence_time,
                    "title": row.title,
                    "message": row.message,
                    "payload": row.payload or {},
                }
                try:
                    await deliver(notification)
                    row.status = models.NotificationStatus.SENT
                    sent += 1
                except Exception as e:
                    logger.warning(f"Delivery of notification {row.handle} failed: {e}")
                    row.status = models.NotificationStatus.FAILED
                    row.error = str(e)
                    failed += 1

        if sent or failed:
            logger.info(f"Dispatched due notifications: {sent} sent, {failed} failed")
        return {"sent": sent, "failed": failed}


# ==================== HTTP PUSH SCHEDULER ====================

class HttpNotificationGateway(NotificationGateway):
    """
    Adapter for a remote push scheduler exposing
    POST /notifications, DELETE /notifications/{id} and GET /notifications
    """

    REFUSED_STATUSES = {401, 403, 429}

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        tz_name: Optional[str] = None
    ):
        super().__init__(clock)
        self.tz_name = tz_name or settings.TIMEZONE
        if client is None:
            base_url = base_url or settings.PUSH_SCHEDULER_URL
            if not base_url:
                raise ValueError("PUSH_SCHEDULER_URL is required for the http notification backend")
            token = token or settings.PUSH_SCHEDULER_TOKEN
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            client = httpx.AsyncClient(
                base_url=base_url,
                headers=headers,
                timeout=timeout or settings.PUSH_SCHEDULER_TIMEOUT
            )
        self._client = client

    async def _schedule(self, key, firing_instant, payload) -> str:
        try:
            response = await self._client.post(
                "/notifications",
                json={
                    "fire_at": localize(firing_instant, self.tz_name).isoformat(),
                    "title": payload.title,
                    "body": payload.body,
                    "data": payload.to_dict(),
                }
            )
        except httpx.HTTPError as e:
            raise SchedulingUnavailable(f"Push scheduler unreachable: {e}") from e

        if response.status_code in self.REFUSED_STATUSES:
            raise SchedulingUnavailable(
                f"Push scheduler refused reminder ({response.status_code}): {response.text}"
            )
        if response.is_error:
            raise SchedulingUnavailable(f"Push scheduler error {response.status_code}")

        return str(response.json()["id"])

    async def _cancel(self, handle: str) -> None:
        try:
            response = await self._client.delete(f"/notifications/{handle}")
        except httpx.HTTPError as e:
            raise CancellationFailed(handle, str(e)) from e

        if response.status_code in (404, 410):
            return
        if response.is_error:
            raise CancellationFailed(handle, f"status {response.status_code}")

    async def list_pending_handles(self) -> Set[str]:
        try:
            response = await self._client.get("/notifications", params={"status": "pending"})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SchedulingUnavailable(f"Cannot list pending notifications: {e}") from e
        return {str(item["id"]) for item in response.json()}

    async def aclose(self) -> None:
        await self._client.aclose()


# ==================== FACTORY ====================

def create_notification_gateway(backend: Optional[str] = None) -> NotificationGateway:
    """Build the gateway selected by NOTIFICATION_BACKEND"""
    backend = (backend or settings.NOTIFICATION_BACKEND).lower()

    if backend == "memory":
        return InMemoryNotificationGateway(quota=settings.NOTIFICATION_QUOTA)
    if backend == "database":
        return DatabaseNotificationGateway(quota=settings.NOTIFICATION_QUOTA)
    if backend == "http":
        return HttpNotificationGateway()

    raise ValueError(f"Unknown notification backend: {backend}")
