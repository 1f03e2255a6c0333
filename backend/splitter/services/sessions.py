"""
Session repository.

Stores one JSON snapshot per session under ``session:{uuid}`` with a TTL that
is re-armed on every write, so a session expires after the retention window
has passed without any save.

Storage failures are classified here, once, and returned as a ``StoreResult``
instead of being raised, so the HTTP layer can map each category to a status
code without looking at Redis exceptions.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Callable, Generic, Optional, TypeVar

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..config import get_settings
from ..models import SessionSnapshot, StoredSession, utcnow
from .storage import get_redis_client


logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreError(str, Enum):
    """Categories of session storage failure."""

    CONNECTION_ERROR = "CONNECTION_ERROR"
    NOT_FOUND = "SESSION_NOT_FOUND"
    INVALID_DATA = "INVALID_DATA"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass
class StoreResult(Generic[T]):
    """Outcome of a repository call: either a value or a classified error."""

    value: Optional[T] = None
    error: Optional[StoreError] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


class SessionRepository:
    """CRUD over session snapshots in Redis."""

    key_prefix = "session:"

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    @property
    def ttl_seconds(self) -> int:
        if self._ttl_seconds is None:
            return get_settings().session_ttl_seconds
        return self._ttl_seconds

    def key(self, uuid: str) -> str:
        return f"{self.key_prefix}{uuid}"

    def _failure(self, exc: RedisError, action: str, uuid: str) -> StoreResult:
        if isinstance(exc, (RedisConnectionError, RedisTimeoutError)):
            logger.error("Storage unreachable while trying to %s session %s: %s", action, uuid, exc)
            return StoreResult(error=StoreError.CONNECTION_ERROR, message=str(exc))

        logger.error(
            "Unexpected storage error while trying to %s session %s",
            action,
            uuid,
            exc_info=exc,
        )
        return StoreResult(error=StoreError.UNKNOWN_ERROR, message=str(exc))

    async def get(self, uuid: str) -> StoreResult[StoredSession]:
        """
        Load a stored session.

        Returns:
            StoreResult holding the StoredSession, or NOT_FOUND when the key is
            missing or expired, or INVALID_DATA when the payload cannot be read.
        """
        try:
            raw = await self.client.get(self.key(uuid))
        except UnicodeDecodeError as exc:
            logger.warning("Stored session %s is not valid UTF-8: %s", uuid, exc)
            return StoreResult(error=StoreError.INVALID_DATA, message="Stored session data is invalid")
        except RedisError as exc:
            return self._failure(exc, "read", uuid)

        if raw is None:
            return StoreResult(error=StoreError.NOT_FOUND, message=f"Session {uuid} not found")

        try:
            session = StoredSession.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Stored session %s is malformed: %s", uuid, exc)
            return StoreResult(error=StoreError.INVALID_DATA, message="Stored session data is invalid")

        return StoreResult(value=session)

    async def save(self, uuid: str, snapshot: SessionSnapshot) -> StoreResult[StoredSession]:
        """
        Upsert a session snapshot.

        The original creation time is kept when the key already exists; the
        update time is always refreshed and the TTL is reset to the full
        retention window. An unreadable existing payload is overwritten.
        """
        key = self.key(uuid)
        now = self._clock()

        try:
            created_at = now
            existing = await self._read_existing(key, uuid)
            if existing is not None:
                created_at = existing.created_at

            stored = StoredSession(uuid=uuid, data=snapshot, created_at=created_at, updated_at=now)
            await self.client.set(key, stored.model_dump_json(by_alias=True), ex=self.ttl_seconds)
        except RedisError as exc:
            return self._failure(exc, "save", uuid)

        logger.debug("Saved session %s (%d people, %d receipts)", uuid, len(snapshot.people), len(snapshot.receipts))
        return StoreResult(value=stored)

    async def _read_existing(self, key: str, uuid: str) -> Optional[StoredSession]:
        try:
            raw = await self.client.get(key)
            if raw is None:
                return None
            return StoredSession.model_validate_json(raw)
        except (UnicodeDecodeError, ValidationError):
            logger.warning("Overwriting unreadable session %s", uuid)
            return None

    async def delete(self, uuid: str) -> StoreResult[bool]:
        """Delete a session. The value tells whether a key actually existed."""
        try:
            removed = await self.client.delete(self.key(uuid))
        except RedisError as exc:
            return self._failure(exc, "delete", uuid)

        return StoreResult(value=removed > 0)

    async def health_check(self) -> bool:
        """Round-trip a PING to check that storage is reachable."""
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            logger.warning("Storage health check failed: %s", exc)
            return False


@lru_cache
def get_session_repository() -> SessionRepository:
    """Get the shared session repository."""
    return SessionRepository()
