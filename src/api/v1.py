"""Centralized v1 API router — all module routers are included here."""

from fastapi import APIRouter

from src.modules.warranty.router import (
    admin_router,
    appointment_router,
    backjob_router,
    conversation_router,
)

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(appointment_router)
v1_router.include_router(backjob_router)
v1_router.include_router(conversation_router)
v1_router.include_router(admin_router)
