from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from gateguard.api.deps import get_auth_context, get_notification_dispatcher
from gateguard.core.context import AuthContext
from gateguard.db.session import get_db
from gateguard.services.checkin_code_service import exit_pre_approved, list_pre_approved
from gateguard.services.push_service import NotificationDispatcher

router = APIRouter()


@router.get("/current")
def current_visits(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": list_pre_approved(db, ctx, "current")}


@router.get("/past")
def past_visits(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": list_pre_approved(db, ctx, "past")}


@router.post("/{pre_approved_id}/exit")
async def pre_approved_exit(
    pre_approved_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    return {"data": await exit_pre_approved(db, dispatcher, ctx, pre_approved_id)}
