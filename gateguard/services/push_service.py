import asyncio
import json
import logging
from functools import lru_cache
from threading import Lock

from gateguard.core.config import get_settings
from gateguard.core.exceptions import DependencyFailureError

settings = get_settings()
_firebase_init_lock = Lock()
logger = logging.getLogger(__name__)

try:
    import firebase_admin
    from firebase_admin import credentials as firebase_credentials
    from firebase_admin import messaging as firebase_messaging
except ImportError:
    firebase_admin = None
    firebase_credentials = None
    firebase_messaging = None

CANCEL_ACTION = "CANCEL_NOTIFICATION"


class NotificationDispatcher:
    """Transport for push notifications addressed by device token.

    Callers treat delivery as fire-and-forget; implementations may raise and
    the fan-out layer logs the failure instead of failing the transition.
    """

    async def notify(self, device_token: str, action: str, payload: str) -> str | None:
        raise NotImplementedError

    async def cancel(self, device_token: str, notification_id: str) -> None:
        raise NotImplementedError


class SocketPushDispatcher(NotificationDispatcher):
    def __init__(self, sio, namespace: str, registry=None):
        self.sio = sio
        self.namespace = namespace
        self.registry = registry

    def _offline(self, device_token: str) -> bool:
        if self.registry is None or self.registry.is_connected(device_token):
            return False
        logger.debug("socket push skipped, device offline device_token=%s", device_token[:8])
        return True

    async def notify(self, device_token: str, action: str, payload: str) -> str | None:
        if self._offline(device_token):
            return None
        await self.sio.emit(
            "push.notify",
            {"action": action, "payload": payload},
            room=f"device:{device_token}",
            namespace=self.namespace,
        )
        return None

    async def cancel(self, device_token: str, notification_id: str) -> None:
        if self._offline(device_token):
            return
        await self.sio.emit(
            "push.cancel",
            {"action": CANCEL_ACTION, "notificationId": notification_id},
            room=f"device:{device_token}",
            namespace=self.namespace,
        )


def _ensure_firebase_app():
    if firebase_admin is None or firebase_messaging is None or firebase_credentials is None:
        raise DependencyFailureError("Firebase Admin SDK is not installed. Add firebase-admin to dependencies.")

    if firebase_admin._apps:
        return firebase_admin.get_app()

    with _firebase_init_lock:
        if firebase_admin._apps:
            return firebase_admin.get_app()
        if not settings.FIREBASE_PROJECT_ID:
            raise DependencyFailureError("FIREBASE_PROJECT_ID is not configured")
        raw = settings.FIREBASE_CREDENTIALS_JSON.strip()
        if raw:
            cred = firebase_credentials.Certificate(json.loads(raw))
            return firebase_admin.initialize_app(
                credential=cred,
                options={"projectId": settings.FIREBASE_PROJECT_ID},
            )
        logger.warning("Firebase credentials not configured. Falling back to default credentials lookup.")
        return firebase_admin.initialize_app(options={"projectId": settings.FIREBASE_PROJECT_ID})


class FirebasePushDispatcher(NotificationDispatcher):
    async def notify(self, device_token: str, action: str, payload: str) -> str | None:
        app = _ensure_firebase_app()
        message = firebase_messaging.Message(
            token=device_token,
            data={
                "action": action,
                "payload": payload,
                "click_action": "FLUTTER_NOTIFICATION_CLICK",
            },
            android=firebase_messaging.AndroidConfig(priority="high"),
            apns=firebase_messaging.APNSConfig(
                payload=firebase_messaging.APNSPayload(aps=firebase_messaging.Aps(category=action)),
            ),
        )
        return await asyncio.to_thread(firebase_messaging.send, message, app=app)

    async def cancel(self, device_token: str, notification_id: str) -> None:
        app = _ensure_firebase_app()
        message = firebase_messaging.Message(
            token=device_token,
            data={"action": CANCEL_ACTION, "notificationId": notification_id},
        )
        await asyncio.to_thread(firebase_messaging.send, message, app=app)


@lru_cache
def get_dispatcher() -> NotificationDispatcher:
    backend = settings.PUSH_BACKEND.strip().lower()
    if backend == "firebase":
        return FirebasePushDispatcher()

    from gateguard.socket.manager import device_registry
    from gateguard.socket.server import sio

    return SocketPushDispatcher(sio, settings.NOTIFICATION_NAMESPACE, registry=device_registry)
