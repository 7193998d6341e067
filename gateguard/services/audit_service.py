import json
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateguard.db.models import AuditLog

logger = logging.getLogger(__name__)


def write_audit_log(
    db: Session,
    society_name: str | None,
    actor_user_id: str | None,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    meta: dict[str, Any] | None = None,
) -> AuditLog | None:
    """Record a committed state transition. The transition stands even if this write fails."""
    row = AuditLog(
        society_name=society_name,
        actor_user_id=actor_user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        meta_json=json.dumps(meta or {}, ensure_ascii=True, default=str),
    )
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning("audit write failed action=%s resource_id=%s", action, resource_id, exc_info=True)
        return None
    return row


def list_audit_logs(db: Session, society_name: str, limit: int = 200) -> list[dict[str, Any]]:
    rows = (
        db.query(AuditLog)
        .filter(AuditLog.society_name == society_name)
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": row.id,
            "actorUserId": row.actor_user_id,
            "action": row.action,
            "resourceType": row.resource_type,
            "resourceId": row.resource_id,
            "meta": json.loads(row.meta_json or "{}"),
            "createdAt": row.created_at.isoformat(),
        }
        for row in rows
    ]
