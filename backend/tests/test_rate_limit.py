from datetime import timedelta

import pytest

from phone_otp.core.exceptions import Reason, StoreUnavailable
from phone_otp.services.rate_limit import RateLimiter, RateLimitPolicy
from phone_otp.services.store import AXIS_IP, InMemoryRecordStore

pytestmark = pytest.mark.anyio

PHONE = "+819012345678"
IP = "1.2.3.4"


def _phone(n: int) -> str:
    return f"+8190000000{n:02d}"


@pytest.fixture
def limiter(store, clock) -> RateLimiter:
    return RateLimiter(store, RateLimitPolicy(), clock=clock)


async def test_first_request_is_admitted(limiter):
    admission = await limiter.admit(PHONE, IP)
    assert admission.allowed
    assert admission.reason is None


async def test_resend_cooldown(limiter, clock):
    assert (await limiter.admit(PHONE, IP)).allowed

    clock.advance(seconds=30)
    admission = await limiter.admit(PHONE, IP)
    assert not admission.allowed
    assert admission.reason is Reason.PHONE_LIMIT_EXCEEDED
    assert admission.retry_after == 60

    clock.advance(seconds=31)
    assert (await limiter.admit(PHONE, IP)).allowed


async def test_per_phone_limit_uses_rolling_hour(limiter, clock):
    for _ in range(3):
        assert (await limiter.admit(PHONE, IP)).allowed
        clock.advance(minutes=2)

    # minute 6: fourth issuance inside the hour
    admission = await limiter.admit(PHONE, IP)
    assert not admission.allowed
    assert admission.reason is Reason.PHONE_LIMIT_EXCEEDED
    assert admission.retry_after == 54 * 60

    # minute 61: the issuance at minute 0 has left the window
    clock.advance(minutes=55)
    assert (await limiter.admit(PHONE, IP)).allowed


async def test_phone_limit_is_independent_of_ip(limiter, clock):
    for i in range(3):
        assert (await limiter.admit(PHONE, f"10.0.0.{i}")).allowed
        clock.advance(minutes=2)
    admission = await limiter.admit(PHONE, "10.0.0.99")
    assert admission.reason is Reason.PHONE_LIMIT_EXCEEDED


async def test_fanout_rejects_sixth_distinct_phone(limiter, clock):
    for i in range(5):
        assert (await limiter.admit(_phone(i), IP)).allowed
        clock.advance(minutes=1)

    admission = await limiter.admit(_phone(5), IP)
    assert not admission.allowed
    assert admission.reason is Reason.SUSPICIOUS_FANOUT


async def test_fanout_ignores_repeat_phone(limiter, clock):
    for i in range(5):
        assert (await limiter.admit(_phone(i), IP)).allowed
        clock.advance(minutes=1)
    # A phone already seen from this IP does not widen the fan-out
    assert (await limiter.admit(_phone(0), IP)).allowed


async def test_fanout_window_is_ten_minutes(limiter, clock):
    for i in range(5):
        assert (await limiter.admit(_phone(i), IP)).allowed
    clock.advance(minutes=11)
    assert (await limiter.admit(_phone(5), IP)).allowed


async def test_ip_limit_blocks_until_window_end(store, clock):
    limiter = RateLimiter(store, RateLimitPolicy(fanout_max_phones=100), clock=clock)
    for i in range(10):
        assert (await limiter.admit(_phone(i), IP)).allowed
        clock.advance(minutes=1)

    # minute 10: eleventh issuance from the IP trips the block
    admission = await limiter.admit(_phone(10), IP)
    assert admission.reason is Reason.IP_LIMIT_EXCEEDED
    assert admission.retry_after == 50 * 60
    counter = await store.get_counter(AXIS_IP, IP, clock() - timedelta(hours=1))
    assert counter.blocked_until == clock() + timedelta(minutes=50)

    # minute 30: still blocked, rejected before any other gate
    clock.advance(minutes=20)
    admission = await limiter.admit(_phone(20), IP)
    assert admission.reason is Reason.IP_LIMIT_EXCEEDED

    # minute 61: block has lapsed and the window has room again
    clock.advance(minutes=31)
    assert (await limiter.admit(_phone(21), IP)).allowed


async def test_other_ips_unaffected_by_block(store, clock):
    limiter = RateLimiter(store, RateLimitPolicy(ip_limit=1), clock=clock)
    assert (await limiter.admit(_phone(1), IP)).allowed
    assert (await limiter.admit(_phone(2), IP)).reason is Reason.IP_LIMIT_EXCEEDED
    assert (await limiter.admit(_phone(3), "5.6.7.8")).allowed


async def test_global_limit(store, clock):
    limiter = RateLimiter(store, RateLimitPolicy(global_limit=3), clock=clock)
    for i in range(3):
        assert (await limiter.admit(_phone(i), f"10.0.0.{i}")).allowed

    admission = await limiter.admit(_phone(3), "10.0.0.3")
    assert not admission.allowed
    assert admission.reason is Reason.GLOBAL_LIMIT_EXCEEDED

    clock.advance(minutes=61)
    assert (await limiter.admit(_phone(3), "10.0.0.3")).allowed


async def test_rejected_requests_are_not_counted(store, limiter, clock):
    assert (await limiter.admit(PHONE, IP)).allowed
    clock.advance(seconds=10)
    assert not (await limiter.admit(PHONE, IP)).allowed
    assert await store.count_since(AXIS_IP, IP, clock() - timedelta(hours=1)) == 1


class BrokenStore(InMemoryRecordStore):
    def __init__(self, error: Exception):
        super().__init__()
        self.error = error

    async def get_counter(self, axis, key, since):
        raise self.error


@pytest.mark.parametrize("error", [StoreUnavailable("redis down"), RuntimeError("unexpected")])
async def test_fails_closed_on_store_error(clock, error):
    limiter = RateLimiter(BrokenStore(error), clock=clock)
    admission = await limiter.admit(PHONE, IP)
    assert not admission.allowed
    assert admission.reason is Reason.STORE_UNAVAILABLE


async def test_fails_closed_when_recording_fails(clock):
    class FailingRecord(InMemoryRecordStore):
        async def try_record_event(self, *args, **kwargs):
            raise StoreUnavailable("write failed")

    limiter = RateLimiter(FailingRecord(), clock=clock)
    admission = await limiter.admit(PHONE, IP)
    assert admission.reason is Reason.STORE_UNAVAILABLE
