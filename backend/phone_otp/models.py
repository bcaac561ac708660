from pydantic import BaseModel, Field


class PhoneNumberRequest(BaseModel):
    # Shape is validated by the normalizer, not here
    phone_number: str = Field(min_length=1, max_length=32)


class PhoneVerifyRequest(BaseModel):
    phone_number: str = Field(min_length=1, max_length=32)
    code: str = Field(min_length=1, max_length=16)


class RequestCodeResponse(BaseModel):
    ok: bool
    reason: str | None = None
    retry_after: int | None = None
    # Local environment only
    code: str | None = None


class VerifyCodeResponse(BaseModel):
    ok: bool
    verified_identity: str | None = None
    verification_token: str | None = None
    reason: str | None = None
    attempts_remaining: int | None = None


class VerificationTokenStatus(BaseModel):
    verified_identity: str
