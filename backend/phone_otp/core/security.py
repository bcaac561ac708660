from datetime import datetime, timedelta, timezone
from typing import Any
import uuid

import jwt

from phone_otp.core.config import settings

ALGORITHM = "HS256"
TOKEN_USE_PHONE_VERIFIED = "phone_verified"


def create_verification_token(phone_number: str, expires_delta: timedelta | None = None) -> str:
    """Sign a short-lived proof that ``phone_number`` passed OTP verification.

    This is not a session; the application exchanges it for whatever session
    it issues.
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.VERIFICATION_TOKEN_EXPIRE_MINUTES)
    now = datetime.now(timezone.utc)
    to_encode: dict[str, Any] = {
        "sub": phone_number,
        "token_use": TOKEN_USE_PHONE_VERIFIED,
        "iat": now,
        "exp": now + expires_delta,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_verification_token(token: str) -> str:
    """Return the verified phone number; raises ``jwt.InvalidTokenError`` otherwise."""
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    if payload.get("token_use") != TOKEN_USE_PHONE_VERIFIED or not payload.get("sub"):
        raise jwt.InvalidTokenError("Not a phone verification token")
    return payload["sub"]
