from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from gateguard.api.deps import get_auth_context, get_notification_dispatcher, require_roles
from gateguard.core.context import AuthContext
from gateguard.db.session import get_db
from gateguard.schemas.checkin_code import (
    CheckInCodeCreate,
    CheckInCodeRedeem,
    CheckInCodeReschedule,
    PermanentCodeCreate,
)
from gateguard.services.checkin_code_service import (
    issue_checkin_code,
    issue_permanent_code,
    list_expected_visitors,
    redeem_code,
    reschedule_checkin_code,
)
from gateguard.services.push_service import NotificationDispatcher

router = APIRouter()


@router.post("")
def create_code(
    payload: CheckInCodeCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": issue_checkin_code(db, ctx, payload)}


@router.get("/expected")
def expected_visitors(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": list_expected_visitors(db, ctx)}


@router.post("/redeem")
async def redeem(
    payload: CheckInCodeRedeem,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    return {"data": await redeem_code(db, dispatcher, ctx, payload.checkInCode)}


@router.post("/permanent")
def create_permanent_code(
    payload: PermanentCodeCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_roles("admin")),
):
    return {"data": issue_permanent_code(db, ctx, payload.userId)}


@router.patch("/{code_id}/schedule")
def reschedule(
    code_id: str,
    payload: CheckInCodeReschedule,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": reschedule_checkin_code(db, ctx, code_id, payload)}
