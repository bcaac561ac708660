from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from phone_otp.core.exceptions import Reason
from phone_otp.services.phone import mask_phone
from phone_otp.services.store import (
    AXIS_GLOBAL,
    AXIS_IP,
    AXIS_IP_PHONES,
    AXIS_PHONE,
    GLOBAL_KEY,
    RecordStore,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def phone_lock_key(phone_number: str) -> str:
    return f"{AXIS_PHONE}:{phone_number}"


def ip_lock_key(ip: str) -> str:
    return f"{AXIS_IP}:{ip}"


@dataclass
class RateLimitPolicy:
    window: timedelta = timedelta(hours=1)
    phone_limit: int = 3
    ip_limit: int = 10
    global_limit: int = 100
    resend_cooldown: timedelta = timedelta(seconds=60)
    fanout_window: timedelta = timedelta(minutes=10)
    fanout_max_phones: int = 5

    @classmethod
    def from_settings(cls) -> "RateLimitPolicy":
        from phone_otp.core.config import settings

        return cls(
            window=timedelta(seconds=settings.OTP_RATE_LIMIT_WINDOW_SECONDS),
            phone_limit=settings.OTP_PHONE_LIMIT,
            ip_limit=settings.OTP_IP_LIMIT,
            global_limit=settings.OTP_GLOBAL_LIMIT,
            resend_cooldown=timedelta(seconds=settings.OTP_RESEND_COOLDOWN_SECONDS),
            fanout_window=timedelta(seconds=settings.OTP_FANOUT_WINDOW_SECONDS),
            fanout_max_phones=settings.OTP_FANOUT_MAX_PHONES,
        )


@dataclass
class Admission:
    allowed: bool
    reason: Optional[Reason] = None
    retry_after: Optional[int] = None


def _seconds_until(moment: Optional[datetime], now: datetime) -> Optional[int]:
    if moment is None:
        return None
    return max(math.ceil((moment - now).total_seconds()), 0)


class RateLimiter:
    """Admission control for code issuance.

    ``admit`` is expected to run while the caller holds the store lock for
    the phone and IP keys (see ``phone_lock_key``/``ip_lock_key``) so that
    check and record happen as one step per key.
    """

    def __init__(
        self,
        store: RecordStore,
        policy: Optional[RateLimitPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy or RateLimitPolicy()
        self.clock = clock

    async def admit(self, phone_number: str, ip: str) -> Admission:
        try:
            admission = await self._evaluate(phone_number, ip)
        except Exception:
            # Fail closed: an unanswerable gate is a rejected issuance
            logger.exception(f"Rate limit evaluation failed for {mask_phone(phone_number)}")
            return Admission(False, Reason.STORE_UNAVAILABLE)
        if not admission.allowed:
            logger.warning(
                f"OTP issuance rejected for {mask_phone(phone_number)}: {admission.reason.value}"
            )
        return admission

    async def _evaluate(self, phone_number: str, ip: str) -> Admission:
        policy = self.policy
        now = self.clock()
        window_since = now - policy.window

        ip_counter = await self.store.get_counter(AXIS_IP, ip, window_since)
        if ip_counter.is_blocked(now):
            return Admission(
                False,
                Reason.IP_LIMIT_EXCEEDED,
                _seconds_until(ip_counter.blocked_until, now),
            )

        phone_counter = await self.store.get_counter(AXIS_PHONE, phone_number, window_since)
        if policy.resend_cooldown and phone_counter.count:
            recent = await self.store.count_since(AXIS_PHONE, phone_number, now - policy.resend_cooldown)
            if recent:
                return Admission(
                    False,
                    Reason.PHONE_LIMIT_EXCEEDED,
                    int(policy.resend_cooldown.total_seconds()),
                )
        if phone_counter.count >= policy.phone_limit:
            return Admission(
                False,
                Reason.PHONE_LIMIT_EXCEEDED,
                _seconds_until(self._window_end(phone_counter.window_start), now),
            )

        recent_phones = await self.store.members_since(AXIS_IP_PHONES, ip, now - policy.fanout_window)
        recent_phones.add(phone_number)
        if len(recent_phones) > policy.fanout_max_phones:
            return Admission(False, Reason.SUSPICIOUS_FANOUT)

        if ip_counter.count >= policy.ip_limit:
            blocked_until = self._window_end(ip_counter.window_start) or now + policy.window
            await self.store.block(AXIS_IP, ip, blocked_until)
            logger.warning(f"IP blocked until {blocked_until.isoformat()} after {ip_counter.count} issuances")
            return Admission(False, Reason.IP_LIMIT_EXCEEDED, _seconds_until(blocked_until, now))

        admitted = await self.store.try_record_event(
            AXIS_GLOBAL, GLOBAL_KEY, now, since=window_since, limit=policy.global_limit
        )
        if not admitted:
            return Admission(False, Reason.GLOBAL_LIMIT_EXCEEDED)

        await self.store.record_event(AXIS_PHONE, phone_number, now)
        await self.store.record_event(AXIS_IP, ip, now)
        await self.store.record_event(AXIS_IP_PHONES, ip, now, member=phone_number)
        return Admission(True)

    def _window_end(self, window_start: Optional[datetime]) -> Optional[datetime]:
        if window_start is None:
            return None
        return window_start + self.policy.window
