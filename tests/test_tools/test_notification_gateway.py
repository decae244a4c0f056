"""
Tests for Notification Gateway
Tests the in-memory, database and HTTP scheduler backends
"""

import json
import pytest
import httpx
from datetime import datetime, date, timedelta
from types import SimpleNamespace

import models
from exceptions import CancellationFailed, SchedulingUnavailable
from tools.notification_gateway import (
    DatabaseNotificationGateway,
    HttpNotificationGateway,
    InMemoryNotificationGateway,
    NotificationPayload,
    create_notification_gateway,
)
from tools.schedule_descriptor import OccurrenceKey


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def key():
    """Occurrence on the test day at 08:00"""
    return OccurrenceKey(1, date(2024, 1, 10), "08:00")


@pytest.fixture
def payload(key):
    """Payload built the way the coordinator builds it"""
    medication = SimpleNamespace(id=1, name="Metformin", dosage="500mg", instructions="Take with meals")
    return NotificationPayload.for_medication(medication, key)


# =============================================================================
# Payload
# =============================================================================

class TestNotificationPayload:
    """Tests for reminder content"""

    @pytest.mark.unit
    def test_title_and_body(self, payload):
        assert payload.title == "Time to take Metformin"
        assert payload.body == "Dose: 500mg. Take with meals"

    @pytest.mark.unit
    def test_body_without_instructions(self, key):
        medication = SimpleNamespace(id=1, name="Aspirin", dosage="81mg", instructions=None)

        assert NotificationPayload.for_medication(medication, key).body == "Dose: 81mg."

    @pytest.mark.unit
    def test_to_dict_carries_occurrence_key(self, payload):
        data = payload.to_dict()

        assert data["medication_id"] == 1
        assert data["occurrence_key"] == {
            "medication_id": 1,
            "occurrence_date": "2024-01-10",
            "occurrence_time": "08:00",
        }


# =============================================================================
# In-Memory
# =============================================================================

class TestInMemoryGateway:
    """Tests for the in-memory scheduler"""

    @pytest.mark.asyncio
    async def test_schedule_future_returns_handle(self, gateway, key, payload):
        handle = await gateway.schedule_at(key, key.instant, payload)

        assert handle
        assert await gateway.list_pending_handles() == {handle}

    @pytest.mark.asyncio
    async def test_past_and_present_instants_not_scheduled(self, gateway, clock, key, payload):
        clock.set(key.instant)

        assert await gateway.schedule_at(key, key.instant, payload) is None
        assert await gateway.schedule_at(key, key.instant - timedelta(minutes=1), payload) is None
        assert gateway.schedule_calls == []

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, gateway, key, payload):
        handle = await gateway.schedule_at(key, key.instant, payload)

        await gateway.cancel(handle)
        await gateway.cancel(handle)
        await gateway.cancel("unknown")
        await gateway.cancel(None)

        assert await gateway.list_pending_handles() == set()

    @pytest.mark.asyncio
    async def test_permission_denied(self, gateway, key, payload):
        gateway.permission_granted = False

        with pytest.raises(SchedulingUnavailable):
            await gateway.schedule_at(key, key.instant, payload)

    @pytest.mark.asyncio
    async def test_quota(self, clock, key, payload):
        gateway = InMemoryNotificationGateway(clock=clock, quota=1)
        await gateway.schedule_at(key, key.instant, payload)

        with pytest.raises(SchedulingUnavailable):
            await gateway.schedule_at(key, key.instant + timedelta(hours=12), payload)

    @pytest.mark.asyncio
    async def test_fire_due(self, gateway, clock, key, payload):
        first = await gateway.schedule_at(key, key.instant, payload)
        await gateway.schedule_at(key, key.instant + timedelta(hours=12), payload)

        fired = gateway.fire_due(clock.advance(hours=9))

        assert [r.handle for r in fired] == [first]
        assert len(gateway.pending) == 1


# =============================================================================
# Database
# =============================================================================

class TestDatabaseGateway:
    """Tests for the server-side scheduled_notifications backend"""

    @pytest.fixture
    def db_gateway(self, session_factory, clock):
        return DatabaseNotificationGateway(session_factory=session_factory, clock=clock)

    @pytest.mark.asyncio
    async def test_schedule_persists_pending_row(self, db_gateway, db_session, key, payload):
        handle = await db_gateway.schedule_at(key, key.instant, payload)

        row = db_session.get(models.ScheduledNotification, handle)
        assert row.status == models.NotificationStatus.PENDING
        assert row.fire_at == key.instant
        assert row.title == "Time to take Metformin"
        assert await db_gateway.list_pending_handles() == {handle}

    @pytest.mark.asyncio
    async def test_cancel_marks_cancelled(self, db_gateway, db_session, key, payload):
        handle = await db_gateway.schedule_at(key, key.instant, payload)

        await db_gateway.cancel(handle)
        await db_gateway.cancel(handle)
        await db_gateway.cancel("missing")

        row = db_session.get(models.ScheduledNotification, handle)
        assert row.status == models.NotificationStatus.CANCELLED
        assert await db_gateway.list_pending_handles() == set()

    @pytest.mark.asyncio
    async def test_quota(self, session_factory, clock, key, payload):
        db_gateway = DatabaseNotificationGateway(session_factory=session_factory, clock=clock, quota=1)
        await db_gateway.schedule_at(key, key.instant, payload)

        with pytest.raises(SchedulingUnavailable):
            await db_gateway.schedule_at(key, key.instant + timedelta(hours=12), payload)

    @pytest.mark.asyncio
    async def test_dispatch_due(self, db_gateway, clock, key, payload):
        due = await db_gateway.schedule_at(key, key.instant, payload)
        later = await db_gateway.schedule_at(key, key.instant + timedelta(hours=12), payload)
        delivered = []

        async def deliver(notification):
            delivered.append(notification["handle"])

        counts = await db_gateway.dispatch_due(now=clock.advance(hours=9), deliver=deliver)

        assert counts == {"sent": 1, "failed": 0}
        assert delivered == [due]
        assert await db_gateway.list_pending_handles() == {later}

    @pytest.mark.asyncio
    async def test_dispatch_failure_marks_failed(self, db_gateway, db_session, clock, key, payload):
        handle = await db_gateway.schedule_at(key, key.instant, payload)

        async def deliver(notification):
            raise RuntimeError("push service down")

        counts = await db_gateway.dispatch_due(now=clock.advance(hours=9), deliver=deliver)

        assert counts == {"sent": 0, "failed": 1}
        row = db_session.get(models.ScheduledNotification, handle)
        assert row.status == models.NotificationStatus.FAILED
        assert "push service down" in row.error


# =============================================================================
# HTTP
# =============================================================================

class TestHttpGateway:
    """Tests for the remote push-scheduler adapter"""

    def make_gateway(self, handler, clock, tz_name="UTC"):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://push.test")
        return HttpNotificationGateway(client=client, clock=clock, tz_name=tz_name)

    @pytest.mark.asyncio
    async def test_schedule_posts_notification(self, clock, key, payload):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"id": "n-1"})

        gateway = self.make_gateway(handler, clock)
        handle = await gateway.schedule_at(key, key.instant, payload)
        await gateway.aclose()

        assert handle == "n-1"
        body = json.loads(requests[0].content)
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/notifications"
        assert body["fire_at"] == "2024-01-10T08:00:00+00:00"
        assert body["data"]["occurrence_key"]["occurrence_time"] == "08:00"

    @pytest.mark.asyncio
    async def test_fire_at_carries_zone_offset(self, clock, key, payload):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "n-2"})

        gateway = self.make_gateway(handler, clock, tz_name="Europe/Kyiv")
        await gateway.schedule_at(key, key.instant, payload)
        await gateway.aclose()

        assert bodies[0]["fire_at"] == "2024-01-10T08:00:00+02:00"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [401, 403, 429, 503])
    async def test_refusal_raises_scheduling_unavailable(self, clock, key, payload, status_code):
        gateway = self.make_gateway(lambda request: httpx.Response(status_code, text="no"), clock)

        with pytest.raises(SchedulingUnavailable):
            await gateway.schedule_at(key, key.instant, payload)

    @pytest.mark.asyncio
    async def test_transport_error_raises_scheduling_unavailable(self, clock, key, payload):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = self.make_gateway(handler, clock)

        with pytest.raises(SchedulingUnavailable):
            await gateway.schedule_at(key, key.instant, payload)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [200, 204, 404, 410])
    async def test_cancel_tolerates_gone(self, clock, status_code):
        gateway = self.make_gateway(lambda request: httpx.Response(status_code), clock)

        await gateway.cancel("n-1")

    @pytest.mark.asyncio
    async def test_cancel_server_error_raises(self, clock):
        gateway = self.make_gateway(lambda request: httpx.Response(500), clock)

        with pytest.raises(CancellationFailed):
            await gateway.cancel("n-1")

    @pytest.mark.asyncio
    async def test_list_pending_handles(self, clock):
        def handler(request):
            assert request.url.params["status"] == "pending"
            return httpx.Response(200, json=[{"id": "a"}, {"id": 2}])

        gateway = self.make_gateway(handler, clock)

        assert await gateway.list_pending_handles() == {"a", "2"}


# =============================================================================
# Factory
# =============================================================================

class TestFactory:
    """Tests for backend selection"""

    @pytest.mark.unit
    def test_memory_and_database_backends(self):
        assert isinstance(create_notification_gateway("memory"), InMemoryNotificationGateway)
        assert isinstance(create_notification_gateway("DATABASE"), DatabaseNotificationGateway)

    @pytest.mark.unit
    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_notification_gateway("carrier-pigeon")
