from typing import Annotated, Optional

from fastapi import Depends, Request

from phone_otp.services.otp import OtpService, build_otp_service
from phone_otp.services.sms import get_sms_provider
from phone_otp.services.store import get_record_store

_otp_service: Optional[OtpService] = None


async def get_otp_service() -> OtpService:
    global _otp_service
    if _otp_service is None:
        _otp_service = build_otp_service(await get_record_store(), get_sms_provider())
    return _otp_service


def reset_otp_service() -> None:
    global _otp_service
    _otp_service = None


def get_client_ip(request: Request) -> str | None:
    # 只信任连接对端；代理头由 ProxyHeadersMiddleware 按 FORWARDED_ALLOW_IPS 处理
    return request.client.host if request.client else None


OtpServiceDep = Annotated[OtpService, Depends(get_otp_service)]
ClientIpDep = Annotated[str | None, Depends(get_client_ip)]
