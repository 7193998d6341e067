from fastapi import APIRouter

from gateguard.core.config import get_settings

router = APIRouter()
settings = get_settings()


@router.get("/health")
def health():
    return {
        "status": "ok",
        "pushBackend": settings.PUSH_BACKEND,
        "environment": settings.ENVIRONMENT,
    }
