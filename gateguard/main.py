import logging

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gateguard.api.routes import api_router
from gateguard.core.config import get_settings
from gateguard.core.exceptions import register_exception_handlers
from gateguard.core.logging import setup_logging
from gateguard.db import models  # noqa: F401
from gateguard.db.base import Base
from gateguard.db.session import SessionLocal, engine
from gateguard.middleware.request_context import RequestContextMiddleware
from gateguard.services.gate_pass_scheduler import get_scheduler
from gateguard.socket.server import sio

settings = get_settings()
setup_logging(logging.DEBUG if settings.DEBUG else logging.INFO)

fastapi_app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)
fastapi_app.include_router(api_router, prefix=settings.API_V1_PREFIX)
fastapi_app.add_middleware(RequestContextMiddleware)
fastapi_app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(fastapi_app)


@fastapi_app.on_event("startup")
async def on_startup():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        get_scheduler().rearm_pending(db)
    finally:
        db.close()


@fastapi_app.on_event("shutdown")
async def on_shutdown():
    await get_scheduler().shutdown()


app = socketio.ASGIApp(
    sio,
    other_asgi_app=fastapi_app,
    socketio_path=settings.SOCKET_PATH.lstrip("/"),
)
