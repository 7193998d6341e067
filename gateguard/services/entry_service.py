import logging
from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from gateguard.core.context import AuthContext
from gateguard.core.exceptions import AlreadyResolvedError, AppException, InvalidTransitionError, NotFoundError
from gateguard.db.models import ApartmentApproval, ApprovalRecordType, ApprovalStatus, Entry
from gateguard.schemas.entry import EntryCreate
from gateguard.services import approval_service
from gateguard.services.audit_service import write_audit_log
from gateguard.services.membership_service import (
    normalize_apartments,
    recipients_for_users,
    residents_by_apartment,
)
from gateguard.services.notification_service import (
    DELIVERY_CHECKED_IN,
    DELIVERY_EXITED,
    ENTRY_RESPONSE,
    VERIFY_DELIVERY_ENTRY,
    fan_out,
)
from gateguard.services.push_service import NotificationDispatcher
from gateguard.services.time_window_service import utcnow

logger = logging.getLogger(__name__)

RECORD = ApprovalRecordType.entry
GUARD_VIEWS = ("waiting", "inside", "history")
RESIDENT_VIEWS = ("pending", "current", "past", "denied")


def require_guard(ctx: AuthContext) -> None:
    if not ctx.is_guard:
        raise AppException("Access Denied: You are not a security guard of this society", status_code=403)


def require_resident(ctx: AuthContext) -> None:
    if not ctx.is_resident or not ctx.apartment_ref:
        raise AppException("Access Denied: You are not a registered resident of this society", status_code=403)


def serialize_entry(entry: Entry, approvals: list[ApartmentApproval]) -> dict[str, Any]:
    return {
        "id": entry.id,
        "name": entry.name,
        "mobNumber": entry.mob_number,
        "profileImg": entry.profile_img,
        "companyName": entry.company_name,
        "companyLogo": entry.company_logo,
        "vehicleDetails": {"vehicleType": entry.vehicle_type, "vehicleNumber": entry.vehicle_number},
        "entryType": entry.entry_type.value,
        "societyName": entry.society_name,
        "gateName": entry.gate_name,
        "apartments": [approval_service.serialize_approval(row) for row in approvals],
        "guardStatus": {"guardId": entry.guard_id, "status": entry.guard_status.value},
        "hasExited": entry.has_exited,
        "entryTime": entry.entry_time.isoformat() if entry.entry_time else None,
        "exitTime": entry.exit_time.isoformat() if entry.exit_time else None,
        "notificationId": entry.notification_id,
        "createdAt": entry.created_at.isoformat(),
    }


def _serialize_many(db: Session, entries: list[Entry]) -> list[dict[str, Any]]:
    approvals = approval_service.approvals_for_records(db, RECORD, [entry.id for entry in entries])
    return [serialize_entry(entry, approvals.get(entry.id, [])) for entry in entries]


def _load_entry(db: Session, ctx: AuthContext, entry_id: str) -> Entry:
    entry = (
        db.query(Entry)
        .filter(Entry.id == entry_id, Entry.society_name == ctx.society_name)
        .populate_existing()
        .first()
    )
    if not entry:
        raise NotFoundError("Entry not found")
    return entry


def _approver_ids(approvals: list[ApartmentApproval]) -> list[str]:
    return [row.approved_by for row in approvals if row.status == ApprovalStatus.approved and row.approved_by]


def get_entry(db: Session, ctx: AuthContext, entry_id: str) -> dict[str, Any]:
    entry = _load_entry(db, ctx, entry_id)
    approvals = approval_service.list_approvals(db, RECORD, entry.id)
    if ctx.is_resident and ctx.apartment_ref not in [row.apartment_ref for row in approvals]:
        raise NotFoundError("Entry not found")
    return serialize_entry(entry, approvals)


async def create_entry(
    db: Session,
    dispatcher: NotificationDispatcher,
    ctx: AuthContext,
    data: EntryCreate,
) -> dict[str, Any]:
    require_guard(ctx)
    apartments = normalize_apartments((item.blockName, item.apartment) for item in data.apartments)
    if not apartments:
        raise AppException("At least one apartment is required", status_code=400)

    residents = residents_by_apartment(db, ctx.society_name, apartments)
    if not residents:
        raise NotFoundError("No resident found")

    vehicle = data.vehicleDetails
    entry = Entry(
        name=data.name.strip().lower(),
        mob_number=data.mobNumber.strip(),
        profile_img=data.profileImg,
        company_name=(data.companyName or "").strip() or None,
        company_logo=data.companyLogo,
        vehicle_type=vehicle.vehicleType if vehicle else None,
        vehicle_number=vehicle.vehicleNumber if vehicle else None,
        entry_type=data.entryType,
        society_name=ctx.society_name,
        gate_name=ctx.gate_name,
        guard_id=ctx.user_id,
        guard_status=ApprovalStatus.pending,
    )
    db.add(entry)
    db.flush()
    approval_service.create_pending_approvals(db, RECORD, entry.id, apartments)
    db.commit()
    db.refresh(entry)

    write_audit_log(
        db,
        ctx.society_name,
        ctx.user_id,
        "entry.created",
        "entry",
        entry.id,
        {"apartments": [f"{block}/{apt}" for block, apt in apartments], "entryType": entry.entry_type.value},
    )
    await fan_out(
        db,
        dispatcher,
        [recipient for group in residents.values() for recipient in group],
        VERIFY_DELIVERY_ENTRY,
        {
            "entryId": entry.id,
            "name": entry.name,
            "mobNumber": entry.mob_number,
            "profileImg": entry.profile_img,
            "entryType": entry.entry_type.value,
            "companyName": entry.company_name,
            "companyLogo": entry.company_logo,
            "notificationId": entry.notification_id,
        },
        correlation_id=entry.notification_id,
    )
    logger.info("entry created entry_id=%s apartments=%d", entry.id, len(apartments))
    return serialize_entry(entry, approval_service.list_approvals(db, RECORD, entry.id))


async def respond_to_entry(
    db: Session,
    dispatcher: NotificationDispatcher,
    ctx: AuthContext,
    entry_id: str,
    decision: str,
) -> dict[str, Any]:
    require_resident(ctx)
    status = approval_service.parse_decision(decision)
    entry = _load_entry(db, ctx, entry_id)
    if entry.has_exited:
        raise InvalidTransitionError("This entry is already closed")

    await approval_service.submit_response(
        db,
        dispatcher,
        ctx,
        RECORD,
        entry.id,
        entry.notification_id,
        status,
        notify=recipients_for_users(db, [entry.guard_id]),
        action=ENTRY_RESPONSE,
        payload={"entryId": entry.id, "name": entry.name, "entryType": entry.entry_type.value},
    )
    write_audit_log(
        db,
        ctx.society_name,
        ctx.user_id,
        f"entry.resident_{status.value}",
        "entry",
        entry.id,
        {"apartment": "/".join(ctx.apartment_ref)},
    )
    return get_entry(db, ctx, entry_id)


async def guard_decide(
    db: Session,
    dispatcher: NotificationDispatcher,
    ctx: AuthContext,
    entry_id: str,
    decision: str,
) -> dict[str, Any]:
    """Admit or turn away a visitor once at least one apartment has answered.

    Approving checks the visitor in (``entry_time``); rejecting is terminal
    and closes the entry without an exit time.
    """
    require_guard(ctx)
    status = approval_service.parse_decision(decision)
    entry = _load_entry(db, ctx, entry_id)

    if not approval_service.has_resolved_apartment(db, RECORD, entry.id):
        raise InvalidTransitionError("Waiting for a resident response. No apartment has responded yet.")

    now = utcnow()
    values: dict = {
        Entry.guard_status: status,
        Entry.guard_id: ctx.user_id,
        Entry.guard_resolved_at: now,
    }
    if status == ApprovalStatus.approved:
        values[Entry.entry_time] = now
    else:
        values[Entry.has_exited] = True

    updated = (
        db.query(Entry)
        .filter(Entry.id == entry.id, Entry.guard_status == ApprovalStatus.pending)
        .update(values, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        raise AlreadyResolvedError("The guard has already decided on this entry.")
    db.commit()

    entry = _load_entry(db, ctx, entry_id)
    approvals = approval_service.list_approvals(db, RECORD, entry.id)
    write_audit_log(db, ctx.society_name, ctx.user_id, f"entry.guard_{status.value}", "entry", entry.id)
    if status == ApprovalStatus.approved:
        await fan_out(
            db,
            dispatcher,
            recipients_for_users(db, _approver_ids(approvals)),
            DELIVERY_CHECKED_IN,
            {"entryId": entry.id, "name": entry.name, "entryType": entry.entry_type.value},
        )
    return serialize_entry(entry, approvals)


async def mark_exit(
    db: Session,
    dispatcher: NotificationDispatcher,
    ctx: AuthContext,
    entry_id: str,
) -> dict[str, Any]:
    require_guard(ctx)
    entry = _load_entry(db, ctx, entry_id)

    updated = (
        db.query(Entry)
        .filter(
            Entry.id == entry.id,
            Entry.guard_status == ApprovalStatus.approved,
            Entry.has_exited.is_(False),
        )
        .update({Entry.has_exited: True, Entry.exit_time: utcnow()}, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        entry = _load_entry(db, ctx, entry_id)
        if entry.guard_status != ApprovalStatus.approved:
            raise InvalidTransitionError("This visitor has not been allowed in")
        raise InvalidTransitionError("This visitor has already exited")
    db.commit()

    entry = _load_entry(db, ctx, entry_id)
    approvals = approval_service.list_approvals(db, RECORD, entry.id)
    write_audit_log(db, ctx.society_name, ctx.user_id, "entry.exited", "entry", entry.id)
    await fan_out(
        db,
        dispatcher,
        recipients_for_users(db, _approver_ids(approvals)),
        DELIVERY_EXITED,
        {
            "entryId": entry.id,
            "name": entry.name,
            "entryType": entry.entry_type.value,
            "exitTime": entry.exit_time.isoformat(),
        },
    )
    return serialize_entry(entry, approvals)


def find_visitor_profile(
    db: Session, ctx: AuthContext, mob_number: str, entry_type: str | None = None
) -> dict[str, Any]:
    require_guard(ctx)
    query = db.query(Entry).filter(Entry.mob_number == mob_number.strip())
    if entry_type:
        query = query.filter(Entry.entry_type == entry_type)
    entry = query.order_by(Entry.created_at.desc()).first()

    context = {"societyName": ctx.society_name, "gateName": ctx.gate_name}
    if not entry:
        return {"found": False, **context}
    return {
        "found": True,
        "name": entry.name,
        "mobNumber": entry.mob_number,
        "profileImg": entry.profile_img,
        "companyName": entry.company_name,
        "companyLogo": entry.company_logo,
        **context,
    }


def list_guard_entries(
    db: Session, ctx: AuthContext, view: str, entry_type: str | None = None, limit: int = 50
) -> list[dict[str, Any]]:
    require_guard(ctx)
    query = db.query(Entry).filter(Entry.society_name == ctx.society_name)
    if view == "waiting":
        query = query.filter(Entry.guard_status == ApprovalStatus.pending, Entry.has_exited.is_(False))
    elif view == "inside":
        query = query.filter(Entry.guard_status == ApprovalStatus.approved, Entry.has_exited.is_(False))
    elif view == "history":
        query = query.filter(Entry.has_exited.is_(True))
    else:
        raise AppException(f"Unknown view '{view}'", status_code=400)
    if entry_type:
        query = query.filter(Entry.entry_type == entry_type)

    entries = query.order_by(Entry.created_at.desc()).limit(limit).all()
    return _serialize_many(db, entries)


def list_resident_entries(db: Session, ctx: AuthContext, view: str, limit: int = 50) -> list[dict[str, Any]]:
    require_resident(ctx)
    block_name, apartment = ctx.apartment_ref
    query = (
        db.query(Entry)
        .join(
            ApartmentApproval,
            and_(
                ApartmentApproval.record_id == Entry.id,
                ApartmentApproval.record_type == RECORD,
            ),
        )
        .filter(
            Entry.society_name == ctx.society_name,
            ApartmentApproval.block_name == block_name,
            ApartmentApproval.apartment == apartment,
        )
    )
    if view == "pending":
        query = query.filter(ApartmentApproval.status == ApprovalStatus.pending, Entry.has_exited.is_(False))
    elif view == "current":
        query = query.filter(Entry.guard_status == ApprovalStatus.approved, Entry.has_exited.is_(False))
    elif view == "past":
        query = query.filter(Entry.guard_status == ApprovalStatus.approved, Entry.has_exited.is_(True))
    elif view == "denied":
        query = query.filter(
            or_(ApartmentApproval.status == ApprovalStatus.rejected, Entry.guard_status == ApprovalStatus.rejected)
        )
    else:
        raise AppException(f"Unknown view '{view}'", status_code=400)

    entries = query.order_by(Entry.created_at.desc()).limit(limit).all()
    return _serialize_many(db, entries)
