import secrets
import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    HttpUrl,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Use top level .env file (one level above ./backend/)
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)
    FRONTEND_HOST: str = "http://localhost:5173"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    # OTP (One-Time Password) configuration
    OTP_CODE_LENGTH: int = 4
    OTP_CODE_TTL_SECONDS: int = 300
    OTP_MAX_ATTEMPTS: int = 3
    OTP_LOCAL_ECHO: bool = True
    # Verification must come from the IP that requested the code
    OTP_BIND_ORIGIN_IP: bool = True
    # Expired records are kept this long so late attempts report expiry
    OTP_EXPIRED_RECORD_GRACE_SECONDS: int = 600
    OTP_SWEEP_INTERVAL_SECONDS: int = 60
    OTP_STORE_BACKEND: Literal["memory", "redis"] = "memory"

    # Issuance admission gates
    OTP_RESEND_COOLDOWN_SECONDS: int = 60
    OTP_RATE_LIMIT_WINDOW_SECONDS: int = 60 * 60
    OTP_PHONE_LIMIT: int = 3
    OTP_IP_LIMIT: int = 10
    OTP_GLOBAL_LIMIT: int = 100
    OTP_FANOUT_WINDOW_SECONDS: int = 10 * 60
    OTP_FANOUT_MAX_PHONES: int = 5

    # A short-lived signed token handed back after a successful verification
    VERIFICATION_TOKEN_EXPIRE_MINUTES: int = 15

    # SMS provider configuration (extensible)
    SMS_PROVIDER: Literal["console", "twilio"] = "console"
    SMS_PRODUCT_NAME: str = "タスカル"
    SMS_TIMEOUT_SECONDS: float = 10.0
    # Twilio
    TWILIO_ACCOUNT_SID: str | None = None
    TWILIO_AUTH_TOKEN: str | None = None
    TWILIO_PHONE_NUMBER: str | None = None
    TWILIO_API_BASE_URL: str = "https://api.twilio.com"

    # Peers allowed to set X-Forwarded-For; everyone else is identified by the socket address
    FORWARDED_ALLOW_IPS: Annotated[list[str] | str, BeforeValidator(parse_cors)] = ["127.0.0.1"]

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS] + [
            self.FRONTEND_HOST
        ]

    PROJECT_NAME: str
    SENTRY_DSN: HttpUrl | None = None

    # Redis configuration
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None
    REDIS_SSL: bool = False
    REDIS_KEY_PREFIX: str = "otp"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def REDIS_URL(self) -> str:
        scheme = "rediss" if self.REDIS_SSL else "redis"
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"{scheme}://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def sms_configured(self) -> bool:
        return bool(
            self.TWILIO_ACCOUNT_SID
            and self.TWILIO_AUTH_TOKEN
            and self.TWILIO_PHONE_NUMBER
        )

    @model_validator(mode="after")
    def _check_otp_code_length(self) -> Self:
        if not 4 <= self.OTP_CODE_LENGTH <= 6:
            raise ValueError("OTP_CODE_LENGTH must be between 4 and 6")
        return self

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("TWILIO_AUTH_TOKEN", self.TWILIO_AUTH_TOKEN)

        return self


settings = Settings()  # type: ignore
