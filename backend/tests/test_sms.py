import base64
import importlib.util
import sys
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest
from twilio.base.exceptions import TwilioRestException

from phone_otp.core.config import settings
from phone_otp.core.exceptions import Reason, SmsDeliveryFailed, SmsUnconfigured
from phone_otp.services.otp import OtpService
from phone_otp.services.sms import (
    ConsoleSMSProvider,
    TwilioSMSProvider,
    UnconfiguredSMSProvider,
    build_login_message,
    get_sms_provider,
)

pytestmark = pytest.mark.anyio

TO = "+819012345678"


def test_login_message_format():
    body = build_login_message("0421", ttl_seconds=300, product_name="タスカル")
    assert body == "【タスカル】認証コード: 0421\n\n※5分間有効です。第三者には絶対に教えないでください。"


def test_login_message_defaults_from_settings():
    body = build_login_message("1234")
    assert body.startswith(f"【{settings.SMS_PRODUCT_NAME}】")
    assert f"※{settings.OTP_CODE_TTL_SECONDS // 60}分間有効です。" in body


class FakeMessages:
    def __init__(self, error: Exception | None = None):
        self.calls = []
        self.error = error

    def create(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.calls.append(kwargs)
        return SimpleNamespace(sid="SM123", status="queued")


def _provider(**kwargs) -> TwilioSMSProvider:
    params = {
        "account_sid": "AC123",
        "auth_token": "secret",
        "from_number": "+15005550006",
    }
    params.update(kwargs)
    return TwilioSMSProvider(**params)


async def test_console_provider_does_not_raise(caplog):
    caplog.set_level("INFO", logger="phone_otp.services.sms")
    await ConsoleSMSProvider().send(TO, "hello")
    assert "5678" in caplog.text
    assert TO not in caplog.text


async def test_twilio_sdk_send(monkeypatch):
    messages = FakeMessages()
    provider = _provider()
    monkeypatch.setattr(provider, "_create_client", lambda: SimpleNamespace(messages=messages))

    await provider.send(TO, "body")
    assert messages.calls == [{"body": "body", "from_": "+15005550006", "to": TO}]


async def test_twilio_sdk_rejection(monkeypatch):
    error = TwilioRestException(400, "/Messages.json", msg="Invalid 'To' number", code=21211)
    provider = _provider()
    monkeypatch.setattr(provider, "_create_client", lambda: SimpleNamespace(messages=FakeMessages(error)))

    with pytest.raises(SmsDeliveryFailed) as exc_info:
        await provider.send(TO, "body")
    assert exc_info.value.status_code == 400
    assert "Invalid" in exc_info.value.detail


@pytest.mark.parametrize("missing", ["account_sid", "auth_token", "from_number"])
async def test_twilio_unconfigured(missing):
    provider = _provider(**{missing: None})
    assert not provider.configured
    with pytest.raises(SmsUnconfigured):
        await provider.send(TO, "body")


TWILIO_MODULES = [
    "twilio",
    "twilio.rest",
    "twilio.http",
    "twilio.http.http_client",
    "twilio.base",
    "twilio.base.exceptions",
]


def _hide_twilio(monkeypatch) -> None:
    # None in sys.modules makes the import raise ModuleNotFoundError
    for name in TWILIO_MODULES:
        monkeypatch.setitem(sys.modules, name, None)


def _direct_provider(monkeypatch, handler) -> TwilioSMSProvider:
    _hide_twilio(monkeypatch)
    return _provider(http_transport=httpx.MockTransport(handler))


async def test_direct_http_fallback(monkeypatch):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM999", "status": "queued"})

    provider = _direct_provider(monkeypatch, handler)
    await provider.send(TO, "認証コード: 1234")

    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    expected_auth = base64.b64encode(b"AC123:secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected_auth}"
    form = parse_qs(request.content.decode())
    assert form == {"From": ["+15005550006"], "To": [TO], "Body": ["認証コード: 1234"]}


async def test_direct_http_error(monkeypatch):
    provider = _direct_provider(
        monkeypatch, lambda request: httpx.Response(400, json={"code": 21211, "message": "Invalid"})
    )
    with pytest.raises(SmsDeliveryFailed) as exc_info:
        await provider.send(TO, "body")
    assert exc_info.value.status_code == 400


async def test_direct_http_unreachable(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    provider = _direct_provider(monkeypatch, handler)
    with pytest.raises(SmsDeliveryFailed):
        await provider.send(TO, "body")


async def test_sdk_failure_is_remembered(monkeypatch):
    calls = []

    def broken_client():
        calls.append(1)
        raise RuntimeError("sdk unavailable")

    provider = _provider(http_transport=httpx.MockTransport(lambda r: httpx.Response(201, json={})))
    monkeypatch.setattr(provider, "_create_client", broken_client)
    await provider.send(TO, "one")
    await provider.send(TO, "two")
    assert len(calls) == 1


def test_get_sms_provider_console(monkeypatch):
    monkeypatch.setattr(settings, "SMS_PROVIDER", "console")
    monkeypatch.setattr(settings, "ENVIRONMENT", "local")
    assert isinstance(get_sms_provider(), ConsoleSMSProvider)


def test_get_sms_provider_twilio(monkeypatch):
    monkeypatch.setattr(settings, "SMS_PROVIDER", "twilio")
    monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "secret")
    monkeypatch.setattr(settings, "TWILIO_PHONE_NUMBER", "+15005550006")

    provider = get_sms_provider()
    assert isinstance(provider, TwilioSMSProvider)
    assert provider.configured


def test_get_sms_provider_twilio_unconfigured(monkeypatch):
    monkeypatch.setattr(settings, "SMS_PROVIDER", "twilio")
    monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", None)

    provider = get_sms_provider()
    assert isinstance(provider, TwilioSMSProvider)
    assert not provider.configured


async def test_module_imports_and_sends_without_twilio_sdk(monkeypatch):
    _hide_twilio(monkeypatch)
    # Execute a fresh copy of the module so the shared one stays untouched
    spec = importlib.util.find_spec("phone_otp.services.sms")
    fresh = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(fresh)

    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM1", "status": "queued"})

    provider = fresh.TwilioSMSProvider(
        account_sid="AC123",
        auth_token="secret",
        from_number="+15005550006",
        http_transport=httpx.MockTransport(handler),
    )
    await provider.send(TO, "body")
    assert len(seen) == 1
    assert seen[0].url.path == "/2010-04-01/Accounts/AC123/Messages.json"


@pytest.mark.parametrize("environment", ["staging", "production"])
async def test_console_provider_refused_outside_local(monkeypatch, environment, store, clock):
    monkeypatch.setattr(settings, "SMS_PROVIDER", "console")
    monkeypatch.setattr(settings, "ENVIRONMENT", environment)

    provider = get_sms_provider()
    assert isinstance(provider, UnconfiguredSMSProvider)
    with pytest.raises(SmsUnconfigured):
        await provider.send(TO, "body")

    result = await OtpService(store, provider, clock=clock).request_code("09012345678", "1.2.3.4")
    assert not result.ok
    assert result.reason is Reason.UNCONFIGURED
