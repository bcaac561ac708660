import os
from datetime import datetime, timedelta, timezone

import pytest

# Settings are read at import time, configure them before importing the app
os.environ.setdefault("PROJECT_NAME", "phone-otp-test")
os.environ.setdefault("ENVIRONMENT", "local")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-verification-tokens")
os.environ.setdefault("SMS_PROVIDER", "console")
os.environ.setdefault("OTP_STORE_BACKEND", "memory")
os.environ.setdefault("OTP_SWEEP_INTERVAL_SECONDS", "0")

from phone_otp.services.otp import OtpConfig, OtpService  # noqa: E402
from phone_otp.services.sms import SMSProvider  # noqa: E402
from phone_otp.services.store import InMemoryRecordStore  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSMSProvider(SMSProvider):
    """Captures outgoing messages instead of delivering them."""

    def __init__(self, error: Exception | None = None):
        self.sent: list[tuple[str, str]] = []
        self.error = error

    async def send(self, to: str, body: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((to, body))

    def last_code(self) -> str:
        body = self.sent[-1][1]
        return body.split("認証コード: ", 1)[1].split("\n", 1)[0]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def sms() -> RecordingSMSProvider:
    return RecordingSMSProvider()


@pytest.fixture
def service(store, sms, clock) -> OtpService:
    return OtpService(store, sms, config=OtpConfig(), clock=clock)
