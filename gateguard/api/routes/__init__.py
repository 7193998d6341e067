from fastapi import APIRouter

from gateguard.api.routes import admin, checkin_codes, entries, gate_passes, health, notifications, pre_approved

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(entries.router, prefix="/entries", tags=["entries"])
api_router.include_router(checkin_codes.router, prefix="/checkin-codes", tags=["checkin-codes"])
api_router.include_router(gate_passes.router, prefix="/gate-passes", tags=["gate-passes"])
api_router.include_router(pre_approved.router, prefix="/pre-approved", tags=["pre-approved"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
