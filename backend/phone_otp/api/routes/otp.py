import jwt
from fastapi import APIRouter, HTTPException, Request, Response

from phone_otp.api.deps import ClientIpDep, OtpServiceDep
from phone_otp.core import security
from phone_otp.core.exceptions import Reason
from phone_otp.models import (
    PhoneNumberRequest,
    PhoneVerifyRequest,
    RequestCodeResponse,
    VerificationTokenStatus,
    VerifyCodeResponse,
)

router = APIRouter(prefix="/otp", tags=["otp"])

REASON_STATUS = {
    Reason.INVALID_FORMAT: 400,
    Reason.PHONE_LIMIT_EXCEEDED: 429,
    Reason.IP_LIMIT_EXCEEDED: 429,
    Reason.GLOBAL_LIMIT_EXCEEDED: 429,
    Reason.SUSPICIOUS_FANOUT: 429,
    Reason.UNCONFIGURED: 503,
    Reason.DELIVERY_FAILED: 502,
    Reason.NO_PENDING_CODE: 400,
    Reason.CODE_EXPIRED: 410,
    Reason.ORIGIN_MISMATCH: 403,
    Reason.ATTEMPTS_EXHAUSTED: 429,
    Reason.CODE_MISMATCH: 401,
    Reason.STORE_UNAVAILABLE: 503,
}


@router.post("/request", response_model=RequestCodeResponse, response_model_exclude_none=True)
async def request_code(
    body: PhoneNumberRequest, service: OtpServiceDep, client_ip: ClientIpDep, response: Response
) -> RequestCodeResponse:
    """Issue a login code to a phone number by SMS."""
    result = await service.request_code(body.phone_number, client_ip)
    if not result.ok:
        response.status_code = REASON_STATUS[result.reason]
        if result.retry_after:
            response.headers["Retry-After"] = str(result.retry_after)
        return RequestCodeResponse(ok=False, reason=result.reason.value, retry_after=result.retry_after)
    return RequestCodeResponse(ok=True, code=result.code)


@router.post("/verify", response_model=VerifyCodeResponse, response_model_exclude_none=True)
async def verify_code(
    body: PhoneVerifyRequest, service: OtpServiceDep, client_ip: ClientIpDep, response: Response
) -> VerifyCodeResponse:
    """Check a login code. On success the normalized phone number is the verified identity."""
    result = await service.verify_code(body.phone_number, body.code, client_ip)
    if not result.ok:
        response.status_code = REASON_STATUS[result.reason]
        return VerifyCodeResponse(
            ok=False, reason=result.reason.value, attempts_remaining=result.attempts_remaining
        )
    return VerifyCodeResponse(
        ok=True,
        verified_identity=result.verified_identity,
        verification_token=security.create_verification_token(result.verified_identity),
    )


@router.get("/verified", response_model=VerificationTokenStatus)
async def verified_identity(request: Request) -> VerificationTokenStatus:
    """Resolve a verification token back to the phone number it vouches for."""
    auth = request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated", headers={"WWW-Authenticate": "Bearer"})
    try:
        phone = security.decode_verification_token(auth[7:].strip())
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    return VerificationTokenStatus(verified_identity=phone)
