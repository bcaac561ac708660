import asyncio
import logging
import time
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.routing import APIRoute
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from phone_otp.api.deps import reset_otp_service
from phone_otp.api.main import api_router
from phone_otp.core.config import settings
from phone_otp.core.redis import close_redis, init_redis
from phone_otp.services.rate_limit import utcnow
from phone_otp.services.store import close_record_store, get_record_store

logger = logging.getLogger(__name__)


def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}"


if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
    sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)


# --- Expired record sweep ---
_sweep_task: asyncio.Task | None = None


async def _sweep_once() -> None:
    store = await get_record_store()
    await store.sweep(utcnow())


async def _sweep_loop() -> None:
    try:
        while True:
            await asyncio.sleep(settings.OTP_SWEEP_INTERVAL_SECONDS)
            try:
                await _sweep_once()
            except Exception:
                # Expiry is also checked on read
                logger.exception("Verification record sweep failed")
    except asyncio.CancelledError:
        return


def _start_sweep_scheduler() -> None:
    global _sweep_task
    if _sweep_task is None and settings.OTP_SWEEP_INTERVAL_SECONDS > 0:
        _sweep_task = asyncio.create_task(_sweep_loop())


async def _shutdown() -> None:
    global _sweep_task
    if _sweep_task is not None:
        _sweep_task.cancel()
        _sweep_task = None
    reset_otp_service()
    await close_record_store()
    await close_redis()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_redis()
    _start_sweep_scheduler()
    try:
        yield
    finally:
        await _shutdown()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    generate_unique_id_function=custom_generate_unique_id,
    lifespan=lifespan,
)

# Set all CORS enabled origins
if settings.all_cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.all_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


class ProcessTimeMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response


# Register class-based middleware
app.add_middleware(ProcessTimeMiddleware)

# Rewrites the client address from X-Forwarded-For only for trusted proxies
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.FORWARDED_ALLOW_IPS)

app.include_router(api_router, prefix=settings.API_V1_STR)
