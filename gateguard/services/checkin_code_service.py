import logging
from datetime import datetime
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from gateguard.core.context import AuthContext
from gateguard.core.exceptions import AlreadyResolvedError, AppException, InvalidTransitionError, NotFoundError
from gateguard.db.models import (
    ApartmentApproval,
    ApprovalRecordType,
    ApprovalStatus,
    CheckInCode,
    CodeProfileType,
    MemberRole,
    PreApproved,
    User,
)
from gateguard.schemas.checkin_code import CheckInCodeCreate, CheckInCodeReschedule
from gateguard.services import approval_service
from gateguard.services.audit_service import write_audit_log
from gateguard.services.code_service import issue_code
from gateguard.services.entry_service import require_guard, require_resident
from gateguard.services.membership_service import get_member, recipients_for_users
from gateguard.services.notification_service import VISITOR_CHECKED_IN, VISITOR_EXITED, fan_out
from gateguard.services.push_service import NotificationDispatcher
from gateguard.services.time_window_service import NOT_YET_VALID, code_window_denial, to_storage, utcnow

logger = logging.getLogger(__name__)

VISITOR_PROFILE_TYPES = {
    CodeProfileType.guest,
    CodeProfileType.cab,
    CodeProfileType.delivery,
    CodeProfileType.other,
}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_code(code: CheckInCode, approvals: list[ApartmentApproval] | None = None) -> dict[str, Any]:
    data = {
        "id": code.id,
        "checkInCode": code.code,
        "name": code.name,
        "mobNumber": code.mob_number,
        "profileType": code.profile_type.value,
        "vehicleNo": code.vehicle_no,
        "purpose": code.purpose,
        "societyName": code.society_name,
        "blockName": code.block_name,
        "apartment": code.apartment,
        "issuedBy": code.issued_by,
        "approvedBy": code.approved_by,
        "checkInCodeStart": _iso(code.start_at),
        "checkInCodeExpiry": _iso(code.expiry_at),
        "isPreApproved": code.is_pre_approved,
        "createdAt": _iso(code.created_at),
    }
    if code.is_gate_pass:
        data["gatePassDetails"] = {
            "apartments": [approval_service.serialize_approval(row) for row in approvals or []],
            "guardStatus": code.guard_status.value if code.guard_status else None,
            "resolutionDeadline": _iso(code.resolution_deadline),
            "resolvedAt": _iso(code.guard_resolved_at),
            "notificationId": code.notification_id,
        }
    return data


def serialize_pre_approved(row: PreApproved) -> dict[str, Any]:
    return {
        "id": row.id,
        "checkInCodeId": row.checkin_code_id,
        "name": row.name,
        "mobNumber": row.mob_number,
        "profileType": row.profile_type.value,
        "societyName": row.society_name,
        "blockName": row.block_name,
        "apartment": row.apartment,
        "approvedBy": row.approved_by,
        "allowedBy": row.allowed_by,
        "guardStatus": row.guard_status.value,
        "hasExited": row.has_exited,
        "entryTime": _iso(row.entry_time),
        "exitTime": _iso(row.exit_time),
    }


def validity_bounds(
    start: datetime | None, expiry: datetime | None, now: datetime | None = None
) -> tuple[datetime, datetime]:
    """Storage (UTC) bounds for a visitor code; the start defaults to now."""
    if expiry is None:
        raise AppException("checkInCodeExpiry is required", status_code=400)
    start_at = to_storage(start) if start else (now or utcnow())
    expiry_at = to_storage(expiry)
    if expiry_at <= start_at:
        raise AppException("checkInCodeExpiry must be after checkInCodeStart", status_code=400)
    return start_at, expiry_at


def _load_code(db: Session, ctx: AuthContext, code_id: str) -> CheckInCode:
    code = (
        db.query(CheckInCode)
        .filter(CheckInCode.id == code_id, CheckInCode.society_name == ctx.society_name)
        .populate_existing()
        .first()
    )
    if not code:
        raise NotFoundError("Check-in code not found")
    return code


def issue_checkin_code(db: Session, ctx: AuthContext, data: CheckInCodeCreate) -> dict[str, Any]:
    require_resident(ctx)
    if data.profileType not in VISITOR_PROFILE_TYPES:
        raise AppException("Use a gate pass for service visits", status_code=400)

    start_at, expiry_at = validity_bounds(data.checkInCodeStart, data.checkInCodeExpiry)
    block_name, apartment = ctx.apartment_ref
    code = CheckInCode(
        code=issue_code(db, ctx.society_name),
        issued_by=ctx.user_id,
        approved_by=ctx.user_id,
        name=data.name.strip(),
        mob_number=(data.mobNumber or "").strip() or None,
        profile_type=data.profileType,
        vehicle_no=data.vehicleNo,
        society_name=ctx.society_name,
        block_name=block_name,
        apartment=apartment,
        start_at=start_at,
        expiry_at=expiry_at,
    )
    db.add(code)
    db.commit()
    db.refresh(code)

    write_audit_log(db, ctx.society_name, ctx.user_id, "checkin_code.issued", "checkin_code", code.id)
    logger.info("check-in code issued code_id=%s society=%s", code.id, ctx.society_name)
    return serialize_code(code)


def reschedule_checkin_code(
    db: Session, ctx: AuthContext, code_id: str, data: CheckInCodeReschedule
) -> dict[str, Any]:
    require_resident(ctx)
    code = _load_code(db, ctx, code_id)
    if code.issued_by != ctx.user_id:
        raise NotFoundError("Check-in code not found")
    if code.is_gate_pass or code.is_permanent:
        raise InvalidTransitionError("Only visitor check-in codes can be rescheduled")

    start_at, expiry_at = validity_bounds(data.checkInCodeStart, data.checkInCodeExpiry)
    updated = (
        db.query(CheckInCode)
        .filter(CheckInCode.id == code.id, CheckInCode.is_pre_approved.is_(False))
        .update({CheckInCode.start_at: start_at, CheckInCode.expiry_at: expiry_at}, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        raise InvalidTransitionError("This check-in code has already been used")
    db.commit()

    write_audit_log(
        db,
        ctx.society_name,
        ctx.user_id,
        "checkin_code.rescheduled",
        "checkin_code",
        code.id,
        {"start": start_at, "expiry": expiry_at},
    )
    return serialize_code(_load_code(db, ctx, code_id))


def list_expected_visitors(db: Session, ctx: AuthContext, limit: int = 50) -> list[dict[str, Any]]:
    require_resident(ctx)
    rows = (
        db.query(CheckInCode)
        .filter(
            CheckInCode.society_name == ctx.society_name,
            CheckInCode.issued_by == ctx.user_id,
            CheckInCode.profile_type.in_(VISITOR_PROFILE_TYPES),
            CheckInCode.is_pre_approved.is_(False),
            CheckInCode.expiry_at > utcnow(),
        )
        .order_by(CheckInCode.start_at.asc())
        .limit(limit)
        .all()
    )
    return [serialize_code(row) for row in rows]


def issue_permanent_code(db: Session, ctx: AuthContext, user_id: str) -> dict[str, Any]:
    """Issue (or return) the never-expiring gate code of a verified resident or guard."""
    if not ctx.is_admin:
        raise AppException("Access Denied: Only society admins can issue member codes", status_code=403)

    member = get_member(db, ctx.society_name, user_id)
    if not member or member.profile_type not in (MemberRole.resident, MemberRole.security):
        raise NotFoundError("Resident or guard not found in this society")

    existing = (
        db.query(CheckInCode)
        .filter(
            CheckInCode.society_name == ctx.society_name,
            CheckInCode.holder_id == user_id,
            CheckInCode.expiry_at.is_(None),
        )
        .first()
    )
    if existing:
        return serialize_code(existing)

    user = db.query(User).filter(User.id == user_id).first()
    profile_type = CodeProfileType.resident if member.profile_type == MemberRole.resident else CodeProfileType.security
    code = CheckInCode(
        code=issue_code(db, ctx.society_name),
        issued_by=ctx.user_id,
        approved_by=ctx.user_id,
        holder_id=user_id,
        name=user.user_name,
        mob_number=user.phone_no,
        profile_type=profile_type,
        society_name=ctx.society_name,
        block_name=member.block_name,
        apartment=member.apartment,
        start_at=utcnow(),
        expiry_at=None,
    )
    db.add(code)
    db.commit()
    db.refresh(code)
    write_audit_log(db, ctx.society_name, ctx.user_id, "checkin_code.permanent_issued", "checkin_code", code.id)
    return serialize_code(code)


def _find_redeemable(db: Session, society_name: str, code_value: str, now: datetime) -> CheckInCode:
    """Pick the unused row behind a code value whose window holds right now.

    A value is only unique among live windows, so several unused rows may
    share it. Dated codes win over permanent member codes. When no window is
    open the denial of the nearest upcoming window is raised, else the one of
    the most recently expired.
    """
    candidates = (
        db.query(CheckInCode)
        .filter(
            CheckInCode.society_name == society_name,
            CheckInCode.code == code_value.strip(),
            CheckInCode.is_pre_approved.is_(False),
        )
        .order_by(CheckInCode.created_at.desc())
        .all()
    )
    if not candidates:
        raise NotFoundError("CheckIn code is invalid or expired.")

    open_codes, upcoming, expired = [], [], []
    for candidate in candidates:
        denial = code_window_denial(candidate.start_at, candidate.expiry_at, now=now)
        if denial is None:
            open_codes.append(candidate)
        elif denial.reason == NOT_YET_VALID:
            upcoming.append((candidate, denial))
        else:
            expired.append((candidate, denial))

    if open_codes:
        return sorted(open_codes, key=lambda code: code.is_permanent)[0]
    if upcoming:
        _, denial = min(upcoming, key=lambda item: item[0].start_at)
    else:
        _, denial = max(expired, key=lambda item: item[0].expiry_at)
    raise denial.to_error()


def _gate_pass_approver_ids(db: Session, code: CheckInCode) -> list[str]:
    return [
        row.approved_by
        for row in approval_service.list_approvals(db, ApprovalRecordType.gate_pass, code.id)
        if row.status == ApprovalStatus.approved and row.approved_by
    ]


def _visit_approver_ids(db: Session, code: CheckInCode) -> list[str]:
    if code.is_permanent:
        return []
    if code.is_gate_pass:
        return _gate_pass_approver_ids(db, code) + [code.issued_by]
    return [code.approved_by or code.issued_by]


async def redeem_code(
    db: Session,
    dispatcher: NotificationDispatcher,
    ctx: AuthContext,
    code_value: str,
) -> dict[str, Any]:
    """Validate a code at the gate and record the visit as checked in.

    Visitor codes and gate passes are single use; permanent member codes are
    never consumed.
    """
    require_guard(ctx)
    now = utcnow()
    code = _find_redeemable(db, ctx.society_name, code_value, now)

    if code.is_gate_pass:
        if code.guard_status == ApprovalStatus.pending:
            raise InvalidTransitionError("This gate pass is still waiting for resident approval")
        if code.guard_status != ApprovalStatus.approved:
            raise InvalidTransitionError("This gate pass was not approved")

    if not code.is_permanent:
        updated = (
            db.query(CheckInCode)
            .filter(CheckInCode.id == code.id, CheckInCode.is_pre_approved.is_(False))
            .update({CheckInCode.is_pre_approved: True, CheckInCode.consumed_at: now}, synchronize_session=False)
        )
        if not updated:
            db.rollback()
            raise AlreadyResolvedError("This check-in code has already been used.")

    visit = PreApproved(
        checkin_code_id=code.id,
        name=code.name,
        mob_number=code.mob_number,
        profile_type=code.profile_type,
        society_name=code.society_name,
        block_name=code.block_name,
        apartment=code.apartment,
        approved_by=code.holder_id if code.is_permanent else (code.approved_by or code.issued_by),
        allowed_by=ctx.user_id,
        guard_status=ApprovalStatus.approved,
        entry_time=now,
    )
    db.add(visit)
    db.commit()
    db.refresh(visit)

    write_audit_log(
        db,
        ctx.society_name,
        ctx.user_id,
        "checkin_code.redeemed",
        "checkin_code",
        code.id,
        {"preApprovedId": visit.id},
    )
    await fan_out(
        db,
        dispatcher,
        recipients_for_users(db, _visit_approver_ids(db, code)),
        VISITOR_CHECKED_IN,
        {
            "preApprovedId": visit.id,
            "checkInCodeId": code.id,
            "name": visit.name,
            "profileType": visit.profile_type.value,
            "entryTime": _iso(visit.entry_time),
        },
    )
    logger.info("check-in code redeemed code_id=%s pre_approved_id=%s", code.id, visit.id)
    return serialize_pre_approved(visit)


async def exit_pre_approved(
    db: Session,
    dispatcher: NotificationDispatcher,
    ctx: AuthContext,
    pre_approved_id: str,
) -> dict[str, Any]:
    require_guard(ctx)
    visit = (
        db.query(PreApproved)
        .filter(PreApproved.id == pre_approved_id, PreApproved.society_name == ctx.society_name)
        .first()
    )
    if not visit:
        raise NotFoundError("Visit not found")

    updated = (
        db.query(PreApproved)
        .filter(PreApproved.id == visit.id, PreApproved.has_exited.is_(False))
        .update({PreApproved.has_exited: True, PreApproved.exit_time: utcnow()}, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        raise InvalidTransitionError("This visitor has already exited")
    db.commit()

    visit = db.query(PreApproved).filter(PreApproved.id == pre_approved_id).populate_existing().one()
    code = db.query(CheckInCode).filter(CheckInCode.id == visit.checkin_code_id).first()
    write_audit_log(db, ctx.society_name, ctx.user_id, "pre_approved.exited", "pre_approved", visit.id)
    if code:
        await fan_out(
            db,
            dispatcher,
            recipients_for_users(db, _visit_approver_ids(db, code)),
            VISITOR_EXITED,
            {"preApprovedId": visit.id, "name": visit.name, "exitTime": _iso(visit.exit_time)},
        )
    return serialize_pre_approved(visit)


def list_pre_approved(db: Session, ctx: AuthContext, view: str, limit: int = 50) -> list[dict[str, Any]]:
    if view not in ("current", "past"):
        raise AppException(f"Unknown view '{view}'", status_code=400)

    query = db.query(PreApproved).filter(
        PreApproved.society_name == ctx.society_name,
        PreApproved.has_exited.is_(view == "past"),
    )
    if ctx.is_resident:
        block_name, apartment = ctx.apartment_ref or (None, None)
        query = query.filter(
            or_(
                PreApproved.approved_by == ctx.user_id,
                (PreApproved.block_name == block_name) & (PreApproved.apartment == apartment),
            )
        )
    elif not ctx.is_guard and not ctx.is_admin:
        raise AppException("Access Denied", status_code=403)

    rows = query.order_by(PreApproved.entry_time.desc()).limit(limit).all()
    return [serialize_pre_approved(row) for row in rows]
