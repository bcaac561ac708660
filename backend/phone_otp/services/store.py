from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import AsyncContextManager, AsyncIterator, Deque, Optional

from phone_otp.core.exceptions import RecordNotFound

logger = logging.getLogger(__name__)

# Rate-limit axes
AXIS_PHONE = "phone"
AXIS_IP = "ip"
AXIS_GLOBAL = "global"
# Phones requested per IP, used for fan-out detection
AXIS_IP_PHONES = "ip_phones"

GLOBAL_KEY = "*"


@dataclass
class VerificationRecord:
    phone_number: str
    code: str
    expires_at: datetime
    issuing_ip: str
    created_at: datetime
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class RateLimitCounter:
    window_start: Optional[datetime]
    count: int
    blocked_until: Optional[datetime] = None

    def is_blocked(self, now: datetime) -> bool:
        return self.blocked_until is not None and now < self.blocked_until


class RecordStore(ABC):
    """Verification records plus the rate-limit history that gates issuance.

    Implementations must make every single operation atomic. Callers that
    need a read-then-write sequence to be atomic hold ``lock()`` for the
    keys involved.
    """

    @abstractmethod
    async def put(self, record: VerificationRecord) -> None: ...

    @abstractmethod
    async def get(self, phone_number: str) -> Optional[VerificationRecord]: ...

    @abstractmethod
    async def increment_attempts(self, phone_number: str) -> int: ...

    @abstractmethod
    async def delete(self, phone_number: str) -> bool: ...

    @abstractmethod
    async def count_since(self, axis: str, key: str, since: datetime) -> int: ...

    @abstractmethod
    async def members_since(self, axis: str, key: str, since: datetime) -> set[str]: ...

    @abstractmethod
    async def record_event(
        self, axis: str, key: str, at: datetime, member: Optional[str] = None
    ) -> None: ...

    @abstractmethod
    async def try_record_event(
        self, axis: str, key: str, at: datetime, *, since: datetime, limit: int
    ) -> bool:
        """Record an event only if fewer than ``limit`` events exist since ``since``."""

    @abstractmethod
    async def get_counter(self, axis: str, key: str, since: datetime) -> RateLimitCounter: ...

    @abstractmethod
    async def block(self, axis: str, key: str, until: datetime) -> None: ...

    @abstractmethod
    def lock(self, *keys: str) -> AsyncContextManager[None]:
        """Async context manager serializing work on the given keys."""

    async def sweep(self, now: datetime) -> int:
        return 0

    async def close(self) -> None:
        return None


class InMemoryRecordStore(RecordStore):
    """Single-instance store. Locks are striped by key hash, not global."""

    def __init__(
        self,
        *,
        expired_record_grace: timedelta = timedelta(minutes=10),
        event_retention: timedelta = timedelta(hours=1),
        lock_stripes: int = 64,
    ) -> None:
        self.expired_record_grace = expired_record_grace
        self.event_retention = event_retention
        self._records: dict[str, VerificationRecord] = {}
        self._events: dict[tuple[str, str], Deque[tuple[datetime, Optional[str]]]] = {}
        self._blocks: dict[tuple[str, str], datetime] = {}
        self._locks = [asyncio.Lock() for _ in range(lock_stripes)]

    def _stripe(self, key: str) -> int:
        return hash(key) % len(self._locks)

    @asynccontextmanager
    async def lock(self, *keys: str) -> AsyncIterator[None]:
        # Fixed acquisition order so overlapping key sets cannot deadlock
        stripes = sorted({self._stripe(k) for k in keys})
        async with AsyncExitStack() as stack:
            for idx in stripes:
                await stack.enter_async_context(self._locks[idx])
            yield

    async def put(self, record: VerificationRecord) -> None:
        self._records[record.phone_number] = replace(record)

    async def get(self, phone_number: str) -> Optional[VerificationRecord]:
        record = self._records.get(phone_number)
        return replace(record) if record is not None else None

    async def increment_attempts(self, phone_number: str) -> int:
        record = self._records.get(phone_number)
        if record is None:
            raise RecordNotFound(phone_number)
        record.attempts += 1
        return record.attempts

    async def delete(self, phone_number: str) -> bool:
        return self._records.pop(phone_number, None) is not None

    def _window(self, axis: str, key: str, since: datetime) -> list[tuple[datetime, Optional[str]]]:
        events = self._events.get((axis, key))
        if not events:
            return []
        return [e for e in events if e[0] >= since]

    async def count_since(self, axis: str, key: str, since: datetime) -> int:
        return len(self._window(axis, key, since))

    async def members_since(self, axis: str, key: str, since: datetime) -> set[str]:
        return {m for _, m in self._window(axis, key, since) if m is not None}

    async def record_event(
        self, axis: str, key: str, at: datetime, member: Optional[str] = None
    ) -> None:
        self._events.setdefault((axis, key), deque()).append((at, member))

    async def try_record_event(
        self, axis: str, key: str, at: datetime, *, since: datetime, limit: int
    ) -> bool:
        # No await between the check and the append, so this is atomic on the loop
        if len(self._window(axis, key, since)) >= limit:
            return False
        self._events.setdefault((axis, key), deque()).append((at, None))
        return True

    async def get_counter(self, axis: str, key: str, since: datetime) -> RateLimitCounter:
        window = self._window(axis, key, since)
        return RateLimitCounter(
            window_start=min((at for at, _ in window), default=None),
            count=len(window),
            blocked_until=self._blocks.get((axis, key)),
        )

    async def block(self, axis: str, key: str, until: datetime) -> None:
        self._blocks[(axis, key)] = until

    async def sweep(self, now: datetime) -> int:
        stale = [
            phone
            for phone, record in self._records.items()
            if record.expires_at + self.expired_record_grace <= now
        ]
        for phone in stale:
            del self._records[phone]

        horizon = now - self.event_retention
        for ident in list(self._events):
            events = self._events[ident]
            while events and events[0][0] < horizon:
                events.popleft()
            if not events:
                del self._events[ident]

        for ident, until in list(self._blocks.items()):
            if until <= now:
                del self._blocks[ident]

        if stale:
            logger.debug(f"Swept {len(stale)} expired verification records")
        return len(stale)


_store: Optional[RecordStore] = None


async def get_record_store() -> RecordStore:
    """Return the process-wide store for the configured backend."""
    global _store
    if _store is None:
        from phone_otp.core.config import settings

        grace = timedelta(seconds=settings.OTP_EXPIRED_RECORD_GRACE_SECONDS)
        retention = timedelta(
            seconds=max(settings.OTP_RATE_LIMIT_WINDOW_SECONDS, settings.OTP_FANOUT_WINDOW_SECONDS)
        )
        if settings.OTP_STORE_BACKEND == "redis":
            from phone_otp.core.redis import get_redis
            from phone_otp.services.redis_store import RedisRecordStore

            _store = RedisRecordStore(
                await get_redis(),
                prefix=settings.REDIS_KEY_PREFIX,
                expired_record_grace=grace,
                event_retention=retention,
            )
        else:
            _store = InMemoryRecordStore(
                expired_record_grace=grace,
                event_retention=retention,
            )
    return _store


async def close_record_store() -> None:
    global _store
    if _store is not None:
        try:
            await _store.close()
        finally:
            _store = None
