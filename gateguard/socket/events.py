import logging

from gateguard.core.config import get_settings
from gateguard.core.security import decode_token
from gateguard.db.models import User
from gateguard.db.session import SessionLocal
from gateguard.socket.manager import device_registry

settings = get_settings()
logger = logging.getLogger(__name__)


def device_room(device_token: str) -> str:
    return f"device:{device_token}"


def _resolve_device(auth: dict | None) -> tuple[str | None, str | None]:
    """Device token and user id of a connecting app.

    Apps send their push token directly; older builds only send the access
    token, in which case the device token registered for that user is used.
    """
    auth = auth or {}
    user_id = None
    token = auth.get("token")
    if token:
        try:
            user_id = decode_token(token).get("sub")
        except ValueError:
            logger.info("socket auth rejected: invalid token")
            return None, None

    device_token = (auth.get("deviceToken") or "").strip() or None
    if device_token or not user_id:
        return device_token, user_id

    db = SessionLocal()
    try:
        row = db.query(User.device_token).filter(User.id == user_id, User.is_active.is_(True)).first()
    finally:
        db.close()
    return (row[0] if row else None), user_id


def register_socket_events(sio):
    @sio.event(namespace=settings.NOTIFICATION_NAMESPACE)
    async def connect(sid, environ, auth):
        device_token, user_id = _resolve_device(auth)
        if not device_token:
            return False
        device_registry.bind(sid, device_token)
        await sio.enter_room(sid, device_room(device_token), namespace=settings.NOTIFICATION_NAMESPACE)
        await sio.emit(
            "push.ready",
            {"data": {"message": "connected"}},
            to=sid,
            namespace=settings.NOTIFICATION_NAMESPACE,
        )

    @sio.event(namespace=settings.NOTIFICATION_NAMESPACE)
    async def disconnect(sid):
        device_registry.unbind_sid(sid)
