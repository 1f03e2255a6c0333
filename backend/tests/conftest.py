import asyncio
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from splitter.models import Person, SessionSnapshot
from splitter.services import allocation
from splitter.services.sessions import SessionRepository, StoreError, StoreResult


NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class SteppingClock:
    """Clock that moves forward one minute every time it is read."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(minutes=1)
        return value


class RecordingRepository(SessionRepository):
    """Repository that records every save and can be told to fail or stall."""

    def __init__(self, *args, save_delay: float = 0.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.saved: list[SessionSnapshot] = []
        self.fail_next = 0
        self.save_delay = save_delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def save(self, uuid, snapshot):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.save_delay:
                await asyncio.sleep(self.save_delay)
            if self.fail_next:
                self.fail_next -= 1
                return StoreResult(error=StoreError.CONNECTION_ERROR, message="Connection refused")
            self.saved.append(snapshot)
            return await super().save(uuid, snapshot)
        finally:
            self.in_flight -= 1


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def people():
    """Three test people."""
    return [
        Person(id="p1", name="Alice", color="#007AFF"),
        Person(id="p2", name="Bob", color="#32D74B"),
        Person(id="p3", name="Carol", color="#FF9F0A"),
    ]


@pytest.fixture
def dinner_receipt(now):
    """Receipt with items of $10 and $20, $3 tax and $6 tip."""
    receipt = allocation.create_receipt("Dinner", receipt_id="r1", now=now)
    receipt = allocation.add_item(receipt, "Pasta", 10.00, item_id="i1", now=now)
    receipt = allocation.add_item(receipt, "Steak", 20.00, item_id="i2", now=now)
    return allocation.update_tax_and_tip(receipt, 3.00, 6.00, now=now)


@pytest.fixture
def fake_server():
    """A fresh, empty in-memory Redis server."""
    return fakeredis.FakeServer()


@pytest.fixture
def fake_redis(fake_server):
    """In-memory Redis client decoding responses, like the application's."""
    return fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)


@pytest.fixture
def repository(fake_redis):
    """Session repository backed by fake Redis with a 30-day TTL."""
    return SessionRepository(client=fake_redis, ttl_seconds=30 * 24 * 60 * 60, clock=SteppingClock())


@pytest.fixture
def recording_repository(fake_redis):
    return RecordingRepository(client=fake_redis, ttl_seconds=30 * 24 * 60 * 60)


SESSION_ID = "3f2b8c4e-9a1d-4e6f-8b2a-7c5d9e0f1a2b"


@pytest.fixture
def session_id():
    """A valid version 4 session id."""
    return SESSION_ID
