"""Tests for the Redis session repository."""

import fakeredis
import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, TimeoutError as RedisTimeoutError

from splitter.models import SessionSnapshot
from splitter.services.sessions import SessionRepository, StoreError

from conftest import NOW, SteppingClock

THIRTY_DAYS = 30 * 24 * 60 * 60


@pytest.fixture
def snapshot(dinner_receipt, people):
    """A session in the assign step with one receipt and three people."""
    return SessionSnapshot(people=people, receipts=[dinner_receipt], current_step="assign")


def broken_client(exc):
    """Redis client mock whose every command raises ``exc``."""
    client = MagicMock()
    client.get = AsyncMock(side_effect=exc)
    client.set = AsyncMock(side_effect=exc)
    client.delete = AsyncMock(side_effect=exc)
    client.ping = AsyncMock(side_effect=exc)
    return client


class TestGetAndSave:
    """Tests for reading and writing snapshots."""

    @pytest.mark.asyncio
    async def test_round_trip_returns_equal_snapshot(self, repository, session_id, snapshot):
        """What was saved comes back deep-equal."""
        saved = await repository.save(session_id, snapshot)
        loaded = await repository.get(session_id)

        assert saved.ok
        assert loaded.ok
        assert loaded.value.uuid == session_id
        assert loaded.value.data == snapshot
        assert loaded.value.created_at == saved.value.created_at
        assert loaded.value.updated_at == saved.value.updated_at

    @pytest.mark.asyncio
    async def test_missing_session_is_not_found(self, repository, session_id):
        result = await repository.get(session_id)

        assert not result.ok
        assert result.error is StoreError.NOT_FOUND
        assert result.value is None

    @pytest.mark.asyncio
    async def test_malformed_payload_is_invalid_data(self, repository, fake_redis, session_id):
        await fake_redis.set(repository.key(session_id), "{not json")

        result = await repository.get(session_id)

        assert result.error is StoreError.INVALID_DATA

    @pytest.mark.asyncio
    async def test_wrong_shape_payload_is_invalid_data(self, repository, fake_redis, session_id):
        await fake_redis.set(repository.key(session_id), '{"uuid": "x", "data": {"currentStep": "nowhere"}}')

        result = await repository.get(session_id)

        assert result.error is StoreError.INVALID_DATA

    @pytest.mark.asyncio
    async def test_non_utf8_payload_is_invalid_data(self, repository, fake_server, session_id):
        raw_client = fakeredis.FakeAsyncRedis(server=fake_server)
        await raw_client.set(repository.key(session_id), b"\xff\xfe{bad")

        result = await repository.get(session_id)

        assert result.error is StoreError.INVALID_DATA
        assert result.value is None

    @pytest.mark.asyncio
    async def test_save_over_non_utf8_payload_overwrites_it(self, repository, fake_server, session_id, snapshot):
        raw_client = fakeredis.FakeAsyncRedis(server=fake_server)
        await raw_client.set(repository.key(session_id), b"\xff\xfe{bad")

        saved = await repository.save(session_id, snapshot)
        loaded = await repository.get(session_id)

        assert saved.ok
        assert saved.value.created_at == saved.value.updated_at
        assert loaded.value.data == snapshot

    @pytest.mark.asyncio
    async def test_payload_uses_camel_case_keys(self, repository, fake_redis, session_id, snapshot):
        await repository.save(session_id, snapshot)

        raw = await fake_redis.get(repository.key(session_id))

        assert '"currentStep":"assign"' in raw
        assert '"originalPrice":10.0' in raw
        assert '"createdAt"' in raw

    @pytest.mark.asyncio
    async def test_save_overwrites_whole_snapshot(self, repository, session_id, snapshot):
        await repository.save(session_id, snapshot)
        await repository.save(session_id, SessionSnapshot())

        loaded = await repository.get(session_id)

        assert loaded.value.data == SessionSnapshot()


class TestRetention:
    """Tests for TTL handling and timestamps."""

    @pytest.mark.asyncio
    async def test_save_sets_full_ttl(self, repository, fake_redis, session_id, snapshot):
        await repository.save(session_id, snapshot)

        ttl = await fake_redis.ttl(repository.key(session_id))

        assert THIRTY_DAYS - 5 <= ttl <= THIRTY_DAYS

    @pytest.mark.asyncio
    async def test_second_save_rearms_ttl_and_keeps_created_at(
        self, repository, fake_redis, session_id, snapshot
    ):
        """TTL counts from the last write; createdAt survives, updatedAt moves."""
        first = await repository.save(session_id, snapshot)
        await fake_redis.expire(repository.key(session_id), 60)

        second = await repository.save(session_id, snapshot)
        ttl = await fake_redis.ttl(repository.key(session_id))
        loaded = await repository.get(session_id)

        assert ttl > 60
        assert loaded.ok
        assert loaded.value.created_at == first.value.created_at == NOW
        assert loaded.value.updated_at == second.value.updated_at
        assert second.value.updated_at > first.value.updated_at

    @pytest.mark.asyncio
    async def test_expired_session_is_not_found(self, repository, fake_redis, session_id, snapshot):
        await repository.save(session_id, snapshot)
        await fake_redis.delete(repository.key(session_id))

        result = await repository.get(session_id)

        assert result.error is StoreError.NOT_FOUND

    @pytest.mark.asyncio
    async def test_save_over_unreadable_payload_resets_created_at(self, fake_redis, session_id, snapshot):
        clock = SteppingClock()
        repository = SessionRepository(client=fake_redis, ttl_seconds=THIRTY_DAYS, clock=clock)
        await fake_redis.set(repository.key(session_id), "garbage")

        result = await repository.save(session_id, snapshot)

        assert result.ok
        assert result.value.created_at == result.value.updated_at


class TestDelete:
    """Tests for session deletion."""

    @pytest.mark.asyncio
    async def test_delete_reports_whether_key_existed(self, repository, session_id, snapshot):
        await repository.save(session_id, snapshot)

        first = await repository.delete(session_id)
        second = await repository.delete(session_id)

        assert first.ok and first.value is True
        assert second.ok and second.value is False
        assert (await repository.get(session_id)).error is StoreError.NOT_FOUND


class TestErrorClassification:
    """Tests for mapping Redis failures to StoreError categories."""

    @pytest.mark.asyncio
    async def test_health_check_passes_with_reachable_storage(self, repository):
        assert await repository.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_fails_when_unreachable(self):
        repository = SessionRepository(client=broken_client(RedisConnectionError("refused")))

        assert await repository.health_check() is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc", [RedisConnectionError("refused"), RedisTimeoutError("timed out")])
    async def test_unreachable_storage_is_connection_error(self, session_id, snapshot, exc):
        repository = SessionRepository(client=broken_client(exc), ttl_seconds=THIRTY_DAYS)

        assert (await repository.get(session_id)).error is StoreError.CONNECTION_ERROR
        assert (await repository.save(session_id, snapshot)).error is StoreError.CONNECTION_ERROR
        assert (await repository.delete(session_id)).error is StoreError.CONNECTION_ERROR

    @pytest.mark.asyncio
    async def test_other_redis_errors_are_unknown(self, session_id):
        repository = SessionRepository(client=broken_client(ResponseError("WRONGTYPE")))

        result = await repository.get(session_id)

        assert result.error is StoreError.UNKNOWN_ERROR
        assert "WRONGTYPE" in result.message
