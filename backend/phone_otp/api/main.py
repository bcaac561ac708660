from fastapi import APIRouter

from phone_otp.api.routes import otp, utils

api_router = APIRouter()
api_router.include_router(otp.router)
api_router.include_router(utils.router)
