from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gateguard.api.deps import get_auth_context
from gateguard.core.context import AuthContext
from gateguard.core.exceptions import NotFoundError
from gateguard.db.session import get_db
from gateguard.services.notification_service import (
    list_notifications,
    mark_all_notifications_read,
    mark_notification_read,
    register_device_token,
)

router = APIRouter()


class DeviceTokenUpdate(BaseModel):
    deviceToken: str = Field(min_length=1)


@router.get("/")
def notifications(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": list_notifications(db, ctx.user_id)}


@router.post("/device-token")
def update_device_token(
    payload: DeviceTokenUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    register_device_token(db, ctx.user_id, payload.deviceToken)
    return {"data": {"userId": ctx.user_id, "status": "registered"}}


@router.post("/{notification_id}/read")
def read_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    data = mark_notification_read(db, ctx.user_id, notification_id)
    if not data:
        raise NotFoundError("Notification not found")
    return {"data": data}


@router.post("/read-all")
def read_all_notifications(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    count = mark_all_notifications_read(db, ctx.user_id)
    return {"data": {"updated": count}}
