from __future__ import annotations

import logging
import secrets
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from phone_otp.core.exceptions import RecordNotFound, StoreUnavailable
from phone_otp.services.store import RateLimitCounter, RecordStore, VerificationRecord

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 10
LOCK_BLOCKING_TIMEOUT_SECONDS = 5

# Returns the new attempt count, or -1 when the record does not exist.
_INCR_ATTEMPTS_LUA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return redis.call('HINCRBY', KEYS[1], 'attempts', 1)
end
return -1
"""

# Adds ARGV[3] at score ARGV[2] only if fewer than ARGV[4] members score >= ARGV[1].
_TRY_RECORD_LUA = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[6])
if redis.call('ZCOUNT', KEYS[1], ARGV[1], '+inf') >= tonumber(ARGV[4]) then
  return 0
end
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[3])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[5]))
return 1
"""


def _ts(value: datetime) -> float:
    return value.timestamp()


def _from_ts(value: str | float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RedisRecordStore(RecordStore):
    """Store shared by every app instance pointing at the same Redis.

    Layout (``p`` is the key prefix):
      - ``p:record:{phone}``       hash, expires with the record plus grace
      - ``p:events:{axis}:{key}``  sorted set of admitted events scored by time
      - ``p:block:{axis}:{key}``   block marker, expires at the block end
      - ``p:lock:{key}``           per-key lock
    """

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str = "otp",
        expired_record_grace: timedelta = timedelta(minutes=10),
        event_retention: timedelta = timedelta(hours=1),
    ) -> None:
        self._redis = redis
        self.prefix = prefix
        self.expired_record_grace = expired_record_grace
        self.event_retention = event_retention
        self._incr_attempts = redis.register_script(_INCR_ATTEMPTS_LUA)
        self._try_record = redis.register_script(_TRY_RECORD_LUA)

    def _record_key(self, phone_number: str) -> str:
        return f"{self.prefix}:record:{phone_number}"

    def _events_key(self, axis: str, key: str) -> str:
        return f"{self.prefix}:events:{axis}:{key}"

    def _block_key(self, axis: str, key: str) -> str:
        return f"{self.prefix}:block:{axis}:{key}"

    def _lock_key(self, key: str) -> str:
        return f"{self.prefix}:lock:{key}"

    @property
    def _retention_seconds(self) -> int:
        return max(int(self.event_retention.total_seconds()), 1)

    @asynccontextmanager
    async def lock(self, *keys: str) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                lock = self._redis.lock(
                    self._lock_key(key),
                    timeout=LOCK_TIMEOUT_SECONDS,
                    blocking_timeout=LOCK_BLOCKING_TIMEOUT_SECONDS,
                )
                try:
                    await stack.enter_async_context(lock)
                except (LockError, RedisError) as exc:
                    logger.error(f"Could not acquire store lock for {key.split(':', 1)[0]}: {exc}")
                    raise StoreUnavailable("Store lock unavailable") from exc
            yield

    async def put(self, record: VerificationRecord) -> None:
        key = self._record_key(record.phone_number)
        expire_at = record.expires_at + self.expired_record_grace
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.hset(
                    key,
                    mapping={
                        "phone_number": record.phone_number,
                        "code": record.code,
                        "expires_at": _ts(record.expires_at),
                        "issuing_ip": record.issuing_ip,
                        "created_at": _ts(record.created_at),
                        "attempts": record.attempts,
                    },
                )
                pipe.expireat(key, expire_at)
                await pipe.execute()
        except RedisError as exc:
            raise StoreUnavailable("Failed to store verification record") from exc

    async def get(self, phone_number: str) -> Optional[VerificationRecord]:
        try:
            data = await self._redis.hgetall(self._record_key(phone_number))
        except RedisError as exc:
            raise StoreUnavailable("Failed to read verification record") from exc
        if not data:
            return None
        return VerificationRecord(
            phone_number=data["phone_number"],
            code=data["code"],
            expires_at=_from_ts(data["expires_at"]),
            issuing_ip=data.get("issuing_ip", ""),
            created_at=_from_ts(data["created_at"]),
            attempts=int(data.get("attempts", 0)),
        )

    async def increment_attempts(self, phone_number: str) -> int:
        try:
            count = int(await self._incr_attempts(keys=[self._record_key(phone_number)]))
        except RedisError as exc:
            raise StoreUnavailable("Failed to count verification attempt") from exc
        if count < 0:
            raise RecordNotFound(phone_number)
        return count

    async def delete(self, phone_number: str) -> bool:
        try:
            return bool(await self._redis.delete(self._record_key(phone_number)))
        except RedisError as exc:
            raise StoreUnavailable("Failed to delete verification record") from exc

    async def count_since(self, axis: str, key: str, since: datetime) -> int:
        try:
            return int(await self._redis.zcount(self._events_key(axis, key), _ts(since), "+inf"))
        except RedisError as exc:
            raise StoreUnavailable("Failed to count events") from exc

    async def members_since(self, axis: str, key: str, since: datetime) -> set[str]:
        try:
            members = await self._redis.zrangebyscore(self._events_key(axis, key), _ts(since), "+inf")
        except RedisError as exc:
            raise StoreUnavailable("Failed to read events") from exc
        return set(members)

    async def record_event(
        self, axis: str, key: str, at: datetime, member: Optional[str] = None
    ) -> None:
        events_key = self._events_key(axis, key)
        score = _ts(at)
        # A named member is re-scored on repeat, which keeps members distinct
        member = member or f"{score}:{secrets.token_hex(4)}"
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zadd(events_key, {member: score})
                pipe.zremrangebyscore(events_key, "-inf", f"({score - self._retention_seconds}")
                pipe.expire(events_key, self._retention_seconds)
                await pipe.execute()
        except RedisError as exc:
            raise StoreUnavailable("Failed to record event") from exc

    async def try_record_event(
        self, axis: str, key: str, at: datetime, *, since: datetime, limit: int
    ) -> bool:
        score = _ts(at)
        try:
            added = await self._try_record(
                keys=[self._events_key(axis, key)],
                args=[
                    _ts(since),
                    score,
                    f"{score}:{secrets.token_hex(4)}",
                    limit,
                    self._retention_seconds,
                    score - self._retention_seconds,
                ],
            )
        except RedisError as exc:
            raise StoreUnavailable("Failed to record event") from exc
        return bool(int(added))

    async def get_counter(self, axis: str, key: str, since: datetime) -> RateLimitCounter:
        events_key = self._events_key(axis, key)
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.zrangebyscore(events_key, _ts(since), "+inf", start=0, num=1, withscores=True)
                pipe.zcount(events_key, _ts(since), "+inf")
                pipe.get(self._block_key(axis, key))
                oldest, count, blocked = await pipe.execute()
        except RedisError as exc:
            raise StoreUnavailable("Failed to read rate-limit counter") from exc
        return RateLimitCounter(
            window_start=_from_ts(oldest[0][1]) if oldest else None,
            count=int(count),
            blocked_until=_from_ts(blocked) if blocked else None,
        )

    async def block(self, axis: str, key: str, until: datetime) -> None:
        try:
            await self._redis.set(
                self._block_key(axis, key),
                _ts(until),
                pxat=int(_ts(until) * 1000),
            )
        except RedisError as exc:
            raise StoreUnavailable("Failed to block key") from exc
