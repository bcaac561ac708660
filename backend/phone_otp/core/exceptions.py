from __future__ import annotations

from enum import Enum


class Reason(str, Enum):
    """Opaque outcome codes returned to callers.

    The UI layer owns translating these into user-facing copy.
    """

    INVALID_FORMAT = "invalid_format"
    PHONE_LIMIT_EXCEEDED = "phone_limit_exceeded"
    IP_LIMIT_EXCEEDED = "ip_limit_exceeded"
    GLOBAL_LIMIT_EXCEEDED = "global_limit_exceeded"
    SUSPICIOUS_FANOUT = "suspicious_fanout"
    UNCONFIGURED = "unconfigured"
    DELIVERY_FAILED = "delivery_failed"
    NO_PENDING_CODE = "no_pending_code"
    CODE_EXPIRED = "code_expired"
    ORIGIN_MISMATCH = "origin_mismatch"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    CODE_MISMATCH = "code_mismatch"
    STORE_UNAVAILABLE = "store_unavailable"


class OTPError(Exception):
    """Base exception for OTP operations."""

    reason: Reason = Reason.STORE_UNAVAILABLE


class InvalidPhoneNumber(OTPError):
    reason = Reason.INVALID_FORMAT


class StoreUnavailable(OTPError):
    reason = Reason.STORE_UNAVAILABLE


class RecordNotFound(OTPError):
    reason = Reason.NO_PENDING_CODE


class SmsUnconfigured(OTPError):
    reason = Reason.UNCONFIGURED


class SmsDeliveryFailed(OTPError):
    reason = Reason.DELIVERY_FAILED

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
