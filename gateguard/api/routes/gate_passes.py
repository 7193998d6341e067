from typing import Literal

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from gateguard.api.deps import get_auth_context, get_gate_pass_scheduler, get_notification_dispatcher
from gateguard.core.context import AuthContext
from gateguard.db.session import get_db
from gateguard.schemas.checkin_code import GatePassCreate
from gateguard.schemas.entry import ApartmentTarget, DecisionPayload
from gateguard.services.gate_pass_scheduler import GatePassScheduler
from gateguard.services.gate_pass_service import (
    add_gate_pass_apartment,
    create_gate_pass,
    get_gate_pass,
    list_resident_gate_passes,
    list_security_gate_passes,
    respond_to_gate_pass,
)
from gateguard.services.push_service import NotificationDispatcher

router = APIRouter()


@router.post("")
async def add_gate_pass(
    payload: GatePassCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    scheduler: GatePassScheduler = Depends(get_gate_pass_scheduler),
):
    return {"data": await create_gate_pass(db, dispatcher, scheduler, ctx, payload)}


@router.get("/resident/{view}")
def resident_gate_passes(
    view: Literal["verify", "approved", "rejected", "expired"],
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": list_resident_gate_passes(db, ctx, view)}


@router.get("/security/{view}")
def security_gate_passes(
    view: Literal["verification", "approved", "expired"],
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": list_security_gate_passes(db, ctx, view)}


@router.get("/{gate_pass_id}")
def gate_pass_detail(
    gate_pass_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": get_gate_pass(db, ctx, gate_pass_id)}


@router.post("/{gate_pass_id}/apartments")
async def add_apartment(
    gate_pass_id: str,
    payload: ApartmentTarget,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    return {"data": await add_gate_pass_apartment(db, dispatcher, ctx, gate_pass_id, payload)}


@router.post("/{gate_pass_id}/respond")
async def resident_response(
    gate_pass_id: str,
    payload: DecisionPayload,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    return {"data": await respond_to_gate_pass(db, dispatcher, ctx, gate_pass_id, payload.decision)}
