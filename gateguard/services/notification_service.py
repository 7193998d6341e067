import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateguard.db.models import Notification, User
from gateguard.services.push_service import NotificationDispatcher

logger = logging.getLogger(__name__)

# Push action tags understood by the resident and guard apps.
VERIFY_DELIVERY_ENTRY = "VERIFY_DELIVERY_ENTRY"
ENTRY_RESPONSE = "ENTRY_RESPONSE"
DELIVERY_CHECKED_IN = "DELIVERY_CHECKED_IN"
DELIVERY_EXITED = "DELIVERY_EXITED"
VISITOR_CHECKED_IN = "VISITOR_CHECKED_IN"
VISITOR_EXITED = "VISITOR_EXITED"
VERIFY_GATE_PASS = "VERIFY_GATE_PASS"
GATE_PASS_RESPONSE = "GATE_PASS_RESPONSE"
GATE_PASS_ACTIVATED = "GATE_PASS_ACTIVATED"
GATE_PASS_EXPIRED_NO_APPROVAL = "GATE_PASS_EXPIRED_NO_APPROVAL"
GATE_PASS_EXPIRED_NO_RESPONSE = "GATE_PASS_EXPIRED_NO_RESPONSE"


@dataclass(frozen=True)
class Recipient:
    user_id: str
    device_token: str | None = None


def _unique(recipients: Iterable[Recipient]) -> list[Recipient]:
    seen: set[str] = set()
    result = []
    for recipient in recipients:
        if recipient.user_id in seen:
            continue
        seen.add(recipient.user_id)
        result.append(recipient)
    return result


async def fan_out(
    db: Session,
    dispatcher: NotificationDispatcher,
    recipients: Iterable[Recipient],
    action: str,
    payload: dict,
    correlation_id: str | None = None,
) -> int:
    """Store an inbox copy for every recipient and push to those with a device token.

    Failures are logged and swallowed so they never undo the state change
    that triggered them. Returns the number of pushes handed to the transport.
    """
    targets = _unique(recipients)
    if not targets:
        return 0

    body = json.dumps({**payload, "action": action}, ensure_ascii=True, default=str)
    try:
        db.add_all(
            Notification(user_id=target.user_id, action=action, payload=body, correlation_id=correlation_id)
            for target in targets
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning("inbox write failed action=%s recipients=%d", action, len(targets), exc_info=True)

    sent = 0
    for target in targets:
        if not target.device_token:
            continue
        try:
            await dispatcher.notify(target.device_token, action, body)
            sent += 1
        except Exception:
            logger.warning("push failed action=%s user_id=%s", action, target.user_id, exc_info=True)
    return sent


async def cancel_prompt(
    dispatcher: NotificationDispatcher,
    recipients: Iterable[Recipient],
    notification_id: str,
) -> None:
    for target in _unique(recipients):
        if not target.device_token:
            continue
        try:
            await dispatcher.cancel(target.device_token, notification_id)
        except Exception:
            logger.warning(
                "push cancel failed notification_id=%s user_id=%s", notification_id, target.user_id, exc_info=True
            )


def register_device_token(db: Session, user_id: str, device_token: str) -> None:
    db.query(User).filter(User.id == user_id).update(
        {User.device_token: device_token.strip() or None},
        synchronize_session=False,
    )
    db.commit()


def _serialize(row: Notification) -> dict:
    return {
        "id": row.id,
        "action": row.action,
        "payload": row.payload,
        "notificationId": row.correlation_id,
        "readAt": row.read_at.isoformat() if row.read_at else None,
        "createdAt": row.created_at.isoformat(),
    }


def list_notifications(db: Session, user_id: str) -> list[dict]:
    rows = (
        db.query(Notification)
        .filter(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())
        .limit(50)
        .all()
    )
    return [_serialize(row) for row in rows]


def mark_notification_read(db: Session, user_id: str, notification_id: str) -> dict | None:
    row = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )
    if not row:
        return None
    row.read_at = row.read_at or datetime.utcnow()
    db.commit()
    db.refresh(row)
    return _serialize(row)


def mark_all_notifications_read(db: Session, user_id: str) -> int:
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.read_at.is_(None))
        .update({Notification.read_at: datetime.utcnow()}, synchronize_session=False)
    )
    db.commit()
    return updated
