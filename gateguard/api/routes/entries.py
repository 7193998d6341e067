from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from gateguard.api.deps import get_auth_context, get_notification_dispatcher
from gateguard.core.context import AuthContext
from gateguard.db.models import EntryType
from gateguard.db.session import get_db
from gateguard.schemas.entry import DecisionPayload, EntryCreate
from gateguard.services.entry_service import (
    create_entry,
    find_visitor_profile,
    get_entry,
    guard_decide,
    list_guard_entries,
    list_resident_entries,
    mark_exit,
    respond_to_entry,
)
from gateguard.services.push_service import NotificationDispatcher

router = APIRouter()


@router.post("")
async def add_entry(
    payload: EntryCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    return {"data": await create_entry(db, dispatcher, ctx, payload)}


@router.get("/visitor-profile")
def visitor_profile(
    mobNumber: str = Query(min_length=1),
    entryType: EntryType | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": find_visitor_profile(db, ctx, mobNumber, entryType)}


@router.get("/waiting")
def waiting_entries(
    entryType: EntryType | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": list_guard_entries(db, ctx, "waiting", entryType)}


@router.get("/inside")
def inside_entries(
    entryType: EntryType | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": list_guard_entries(db, ctx, "inside", entryType)}


@router.get("/history")
def checkout_history(
    entryType: EntryType | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": list_guard_entries(db, ctx, "history", entryType)}


@router.get("/resident/{view}")
def resident_entries(
    view: Literal["pending", "current", "past", "denied"],
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": list_resident_entries(db, ctx, view)}


@router.get("/{entry_id}")
def entry_detail(
    entry_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return {"data": get_entry(db, ctx, entry_id)}


@router.post("/{entry_id}/respond")
async def resident_response(
    entry_id: str,
    payload: DecisionPayload,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    return {"data": await respond_to_entry(db, dispatcher, ctx, entry_id, payload.decision)}


@router.post("/{entry_id}/guard-decision")
async def guard_response(
    entry_id: str,
    payload: DecisionPayload,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    return {"data": await guard_decide(db, dispatcher, ctx, entry_id, payload.decision)}


@router.post("/{entry_id}/exit")
async def entry_exit(
    entry_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    return {"data": await mark_exit(db, dispatcher, ctx, entry_id)}
