from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from phone_otp.core.exceptions import (
    InvalidPhoneNumber,
    OTPError,
    Reason,
    RecordNotFound,
    SmsUnconfigured,
)
from phone_otp.services.codes import generate_code
from phone_otp.services.phone import mask_phone, normalize_phone
from phone_otp.services.rate_limit import (
    RateLimiter,
    RateLimitPolicy,
    ip_lock_key,
    phone_lock_key,
    utcnow,
)
from phone_otp.services.sms import SMSProvider, build_login_message
from phone_otp.services.store import RecordStore, VerificationRecord

logger = logging.getLogger(__name__)

UNKNOWN_IP = "unknown"


@dataclass
class RequestCodeResult:
    ok: bool
    reason: Optional[Reason] = None
    retry_after: Optional[int] = None
    # Only set when local echo is enabled, for development
    code: Optional[str] = None


@dataclass
class VerifyCodeResult:
    ok: bool
    verified_identity: Optional[str] = None
    reason: Optional[Reason] = None
    # Set on code_mismatch: guesses left before the code is discarded
    attempts_remaining: Optional[int] = None


@dataclass
class OtpConfig:
    code_length: int = 4
    ttl: timedelta = timedelta(minutes=5)
    max_attempts: int = 3
    bind_origin_ip: bool = True
    echo_code: bool = False

    @classmethod
    def from_settings(cls) -> "OtpConfig":
        from phone_otp.core.config import settings

        return cls(
            code_length=settings.OTP_CODE_LENGTH,
            ttl=timedelta(seconds=settings.OTP_CODE_TTL_SECONDS),
            max_attempts=settings.OTP_MAX_ATTEMPTS,
            bind_origin_ip=settings.OTP_BIND_ORIGIN_IP,
            echo_code=settings.ENVIRONMENT == "local" and settings.OTP_LOCAL_ECHO,
        )


class OtpService:
    """Issues and verifies phone OTP codes.

    Per phone number the lifecycle is NONE -> PENDING -> VERIFIED, EXPIRED
    or ATTEMPTS_EXHAUSTED, and back to NONE once the record is deleted.
    Only the newest issued code for a phone is ever valid.
    """

    def __init__(
        self,
        store: RecordStore,
        sms: SMSProvider,
        *,
        config: Optional[OtpConfig] = None,
        policy: Optional[RateLimitPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sms = sms
        self.config = config or OtpConfig()
        self.clock = clock
        self.rate_limiter = RateLimiter(store, policy, clock=clock)

    async def request_code(self, raw_phone: str, ip: Optional[str]) -> RequestCodeResult:
        try:
            phone = normalize_phone(raw_phone)
        except InvalidPhoneNumber:
            return RequestCodeResult(False, Reason.INVALID_FORMAT)
        ip = ip or UNKNOWN_IP
        masked = mask_phone(phone)

        try:
            async with self.store.lock(phone_lock_key(phone), ip_lock_key(ip)):
                admission = await self.rate_limiter.admit(phone, ip)
                if not admission.allowed:
                    return RequestCodeResult(False, admission.reason, admission.retry_after)

                now = self.clock()
                code = generate_code(self.config.code_length)
                # Overwrites any pending record, invalidating the older code
                await self.store.put(
                    VerificationRecord(
                        phone_number=phone,
                        code=code,
                        expires_at=now + self.config.ttl,
                        issuing_ip=ip,
                        created_at=now,
                    )
                )
        except OTPError as e:
            logger.error(f"Could not issue code for {masked}: {e}")
            return RequestCodeResult(False, Reason.STORE_UNAVAILABLE)

        # The record stays stored whatever happens below; a late SMS is still verifiable
        body = build_login_message(code, ttl_seconds=int(self.config.ttl.total_seconds()))
        try:
            await self.sms.send(phone, body)
        except SmsUnconfigured:
            logger.error(f"SMS provider is not configured, code for {masked} was stored but not sent")
            return RequestCodeResult(False, Reason.UNCONFIGURED)
        except Exception:
            logger.exception(f"Failed to send SMS login code to {masked}")
            return RequestCodeResult(False, Reason.DELIVERY_FAILED)

        logger.info(f"Issued login code to {masked}")
        return RequestCodeResult(True, code=code if self.config.echo_code else None)

    async def verify_code(self, raw_phone: str, code: str, ip: Optional[str]) -> VerifyCodeResult:
        try:
            phone = normalize_phone(raw_phone)
        except InvalidPhoneNumber:
            return VerifyCodeResult(False, reason=Reason.INVALID_FORMAT)
        ip = ip or UNKNOWN_IP
        masked = mask_phone(phone)

        try:
            async with self.store.lock(phone_lock_key(phone)):
                reason, remaining = await self._check_code(phone, code or "", ip)
        except RecordNotFound:
            reason, remaining = Reason.NO_PENDING_CODE, None
        except OTPError as e:
            logger.error(f"Could not verify code for {masked}: {e}")
            reason, remaining = Reason.STORE_UNAVAILABLE, None

        if reason is not None:
            logger.info(f"Verification failed for {masked}: {reason.value}")
            return VerifyCodeResult(False, reason=reason, attempts_remaining=remaining)
        logger.info(f"Verified {masked}")
        return VerifyCodeResult(True, verified_identity=phone)

    async def _check_code(self, phone: str, code: str, ip: str) -> tuple[Optional[Reason], Optional[int]]:
        record = await self.store.get(phone)
        if record is None:
            return Reason.NO_PENDING_CODE, None

        if record.is_expired(self.clock()):
            await self.store.delete(phone)
            return Reason.CODE_EXPIRED, None

        same_origin = secrets.compare_digest(record.issuing_ip.encode(), ip.encode())
        if self.config.bind_origin_ip and not same_origin:
            return Reason.ORIGIN_MISMATCH, None

        attempts = await self.store.increment_attempts(phone)
        if attempts > self.config.max_attempts:
            await self.store.delete(phone)
            return Reason.ATTEMPTS_EXHAUSTED, None

        if not secrets.compare_digest(record.code.encode(), code.encode()):
            return Reason.CODE_MISMATCH, self.config.max_attempts - attempts

        await self.store.delete(phone)
        return None, None


def build_otp_service(store: RecordStore, sms: SMSProvider) -> OtpService:
    return OtpService(
        store,
        sms,
        config=OtpConfig.from_settings(),
        policy=RateLimitPolicy.from_settings(),
    )
