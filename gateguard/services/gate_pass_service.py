"""Gate passes: service visits that several apartments approve independently.

A gate pass is a ``CheckInCode`` of profile type ``service``. Residents of
every target apartment answer through the approval ledger; the guard gate is
not decided by a person but settled once, either when the approval window
closes (see ``gate_pass_scheduler``) or as soon as every apartment has
answered, whichever comes first.
"""

import logging
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gateguard.core.config import get_settings
from gateguard.core.context import AuthContext
from gateguard.core.exceptions import AppException, InvalidTransitionError, NotFoundError
from gateguard.db.models import ApartmentApproval, ApprovalRecordType, ApprovalStatus, CheckInCode, CodeProfileType
from gateguard.schemas.checkin_code import GatePassCreate
from gateguard.schemas.entry import ApartmentTarget
from gateguard.services import approval_service
from gateguard.services.audit_service import write_audit_log
from gateguard.services.checkin_code_service import serialize_code, validity_bounds
from gateguard.services.code_service import issue_code
from gateguard.services.entry_service import require_guard, require_resident
from gateguard.services.membership_service import (
    normalize_apartments,
    recipients_for_users,
    residents_by_apartment,
    society_guards,
)
from gateguard.services.notification_service import (
    GATE_PASS_ACTIVATED,
    GATE_PASS_EXPIRED_NO_APPROVAL,
    GATE_PASS_EXPIRED_NO_RESPONSE,
    GATE_PASS_RESPONSE,
    VERIFY_GATE_PASS,
    Recipient,
    fan_out,
)
from gateguard.services.push_service import NotificationDispatcher
from gateguard.services.time_window_service import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)

RECORD = ApprovalRecordType.gate_pass
RESIDENT_VIEWS = ("verify", "approved", "rejected", "expired")
SECURITY_VIEWS = ("verification", "approved", "expired")


class ResolutionScheduler(Protocol):
    def schedule(self, gate_pass_id: str, deadline: datetime) -> Any: ...


def _load_gate_pass(db: Session, ctx: AuthContext, gate_pass_id: str) -> CheckInCode:
    gate_pass = (
        db.query(CheckInCode)
        .filter(
            CheckInCode.id == gate_pass_id,
            CheckInCode.society_name == ctx.society_name,
            CheckInCode.profile_type == CodeProfileType.service,
        )
        .populate_existing()
        .first()
    )
    if not gate_pass:
        raise NotFoundError("Gate pass not found")
    return gate_pass


def _payload(gate_pass: CheckInCode) -> dict[str, Any]:
    return {
        "gatePassId": gate_pass.id,
        "name": gate_pass.name,
        "mobNumber": gate_pass.mob_number,
        "purpose": gate_pass.purpose,
        "notificationId": gate_pass.notification_id,
    }


def get_gate_pass(db: Session, ctx: AuthContext, gate_pass_id: str) -> dict[str, Any]:
    gate_pass = _load_gate_pass(db, ctx, gate_pass_id)
    return serialize_code(gate_pass, approval_service.list_approvals(db, RECORD, gate_pass.id))


async def create_gate_pass(
    db: Session,
    dispatcher: NotificationDispatcher,
    scheduler: ResolutionScheduler,
    ctx: AuthContext,
    data: GatePassCreate,
) -> dict[str, Any]:
    if not (ctx.is_resident or ctx.is_admin):
        raise AppException("Access Denied: Only residents and admins can issue gate passes", status_code=403)
    apartments = normalize_apartments((item.blockName, item.apartment) for item in data.apartments)
    if not apartments:
        raise AppException("At least one apartment is required", status_code=400)

    residents = residents_by_apartment(db, ctx.society_name, apartments)
    if not residents:
        raise NotFoundError("No resident found")

    now = utcnow()
    start_at, expiry_at = validity_bounds(data.checkInCodeStart, data.checkInCodeExpiry, now=now)
    deadline = now + settings.gate_pass_approval_window
    gate_pass = CheckInCode(
        code=issue_code(db, ctx.society_name, now=now),
        issued_by=ctx.user_id,
        name=data.name.strip(),
        mob_number=(data.mobNumber or "").strip() or None,
        profile_type=CodeProfileType.service,
        vehicle_no=data.vehicleNo,
        purpose=(data.purpose or "").strip() or None,
        society_name=ctx.society_name,
        start_at=start_at,
        expiry_at=expiry_at,
        guard_status=ApprovalStatus.pending,
        resolution_deadline=deadline,
    )
    db.add(gate_pass)
    db.flush()
    approval_service.create_pending_approvals(db, RECORD, gate_pass.id, apartments)
    db.commit()
    db.refresh(gate_pass)

    write_audit_log(
        db,
        ctx.society_name,
        ctx.user_id,
        "gate_pass.created",
        "gate_pass",
        gate_pass.id,
        {"apartments": [f"{block}/{apt}" for block, apt in apartments], "deadline": deadline},
    )
    await fan_out(
        db,
        dispatcher,
        [recipient for group in residents.values() for recipient in group],
        VERIFY_GATE_PASS,
        _payload(gate_pass),
        correlation_id=gate_pass.notification_id,
    )
    scheduler.schedule(gate_pass.id, deadline)
    logger.info("gate pass created gate_pass_id=%s deadline=%s", gate_pass.id, deadline.isoformat())
    return get_gate_pass(db, ctx, gate_pass.id)


async def add_gate_pass_apartment(
    db: Session,
    dispatcher: NotificationDispatcher,
    ctx: AuthContext,
    gate_pass_id: str,
    target: ApartmentTarget,
) -> dict[str, Any]:
    require_guard(ctx)
    gate_pass = _load_gate_pass(db, ctx, gate_pass_id)
    if gate_pass.guard_status != ApprovalStatus.pending:
        raise InvalidTransitionError("This gate pass has already been resolved")

    (ref,) = normalize_apartments([(target.blockName, target.apartment)])
    if approval_service.status_for(db, RECORD, gate_pass.id, *ref) is not None:
        raise AppException("This apartment is already part of the gate pass", status_code=409)

    residents = residents_by_apartment(db, ctx.society_name, [ref]).get(ref, [])
    if not residents:
        raise NotFoundError("No resident found")

    position = len(approval_service.list_approvals(db, RECORD, gate_pass.id))
    approval_service.create_pending_approvals(db, RECORD, gate_pass.id, [ref], start_position=position)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise AppException("This apartment is already part of the gate pass", status_code=409) from exc

    write_audit_log(
        db, ctx.society_name, ctx.user_id, "gate_pass.apartment_added", "gate_pass", gate_pass.id, {"apartment": "/".join(ref)}
    )
    await fan_out(
        db,
        dispatcher,
        residents,
        VERIFY_GATE_PASS,
        _payload(gate_pass),
        correlation_id=gate_pass.notification_id,
    )
    return get_gate_pass(db, ctx, gate_pass.id)


def _gate_pass_open():
    return (
        select(CheckInCode.id)
        .where(CheckInCode.id == ApartmentApproval.record_id, CheckInCode.guard_status == ApprovalStatus.pending)
        .exists()
    )


async def respond_to_gate_pass(
    db: Session,
    dispatcher: NotificationDispatcher,
    ctx: AuthContext,
    gate_pass_id: str,
    decision: str,
) -> dict[str, Any]:
    require_resident(ctx)
    status = approval_service.parse_decision(decision)
    gate_pass = _load_gate_pass(db, ctx, gate_pass_id)
    if gate_pass.guard_status != ApprovalStatus.pending:
        raise InvalidTransitionError("This gate pass has already been resolved")

    await approval_service.submit_response(
        db,
        dispatcher,
        ctx,
        RECORD,
        gate_pass.id,
        gate_pass.notification_id,
        status,
        notify=recipients_for_users(db, [gate_pass.issued_by]),
        action=GATE_PASS_RESPONSE,
        payload=_payload(gate_pass),
        parent_open=_gate_pass_open(),
    )
    write_audit_log(
        db,
        ctx.society_name,
        ctx.user_id,
        f"gate_pass.resident_{status.value}",
        "gate_pass",
        gate_pass.id,
        {"apartment": "/".join(ctx.apartment_ref)},
    )

    if approval_service.pending_count(db, RECORD, gate_pass.id) == 0:
        await resolve_gate_pass(db, dispatcher, gate_pass.id)
    return get_gate_pass(db, ctx, gate_pass_id)


async def resolve_gate_pass(
    db: Session,
    dispatcher: NotificationDispatcher,
    gate_pass_id: str,
    now: datetime | None = None,
) -> ApprovalStatus | None:
    """Settle the guard gate of a gate pass exactly once.

    Activated when at least one apartment approved, otherwise rejected.
    Returns the outcome, or None when the gate pass was already settled (or
    is gone), in which case nothing is written and nobody is notified.
    """
    gate_pass = db.query(CheckInCode).filter(CheckInCode.id == gate_pass_id).populate_existing().first()
    if not gate_pass or gate_pass.guard_status != ApprovalStatus.pending:
        return None

    approvals = approval_service.list_approvals(db, RECORD, gate_pass.id)
    members = residents_by_apartment(db, gate_pass.society_name, [row.apartment_ref for row in approvals])
    groups: dict[ApprovalStatus, list[Recipient]] = {status: [] for status in ApprovalStatus}
    for row in approvals:
        groups[row.status].extend(members.get(row.apartment_ref, []))

    if any(row.status == ApprovalStatus.approved for row in approvals):
        outcome = ApprovalStatus.approved
    else:
        outcome = ApprovalStatus.rejected

    updated = (
        db.query(CheckInCode)
        .filter(CheckInCode.id == gate_pass.id, CheckInCode.guard_status == ApprovalStatus.pending)
        .update(
            {CheckInCode.guard_status: outcome, CheckInCode.guard_resolved_at: now or utcnow()},
            synchronize_session=False,
        )
    )
    if not updated:
        db.rollback()
        logger.info("gate pass already resolved gate_pass_id=%s", gate_pass_id)
        return None
    db.commit()

    activated = outcome == ApprovalStatus.approved
    write_audit_log(
        db,
        gate_pass.society_name,
        None,
        "gate_pass.activated" if activated else "gate_pass.expired",
        "gate_pass",
        gate_pass.id,
        {status.value: len(recipients) for status, recipients in groups.items()},
    )

    payload = {**_payload(gate_pass), "guardStatus": outcome.value}
    guards = society_guards(db, gate_pass.society_name)
    if activated:
        await fan_out(db, dispatcher, groups[ApprovalStatus.approved], GATE_PASS_ACTIVATED, payload)
        await fan_out(db, dispatcher, groups[ApprovalStatus.pending], GATE_PASS_EXPIRED_NO_RESPONSE, payload)
        await fan_out(db, dispatcher, guards, GATE_PASS_ACTIVATED, payload)
    else:
        await fan_out(db, dispatcher, guards, GATE_PASS_EXPIRED_NO_APPROVAL, payload)
        await fan_out(db, dispatcher, groups[ApprovalStatus.pending], GATE_PASS_EXPIRED_NO_RESPONSE, payload)

    logger.info("gate pass resolved gate_pass_id=%s outcome=%s", gate_pass.id, outcome.value)
    return outcome


def _serialize_many(db: Session, rows: list[CheckInCode]) -> list[dict[str, Any]]:
    approvals = approval_service.approvals_for_records(db, RECORD, [row.id for row in rows])
    return [serialize_code(row, approvals.get(row.id, [])) for row in rows]


def list_resident_gate_passes(db: Session, ctx: AuthContext, view: str, limit: int = 50) -> list[dict[str, Any]]:
    require_resident(ctx)
    block_name, apartment = ctx.apartment_ref
    query = (
        db.query(CheckInCode)
        .join(
            ApartmentApproval,
            and_(ApartmentApproval.record_id == CheckInCode.id, ApartmentApproval.record_type == RECORD),
        )
        .filter(
            CheckInCode.society_name == ctx.society_name,
            CheckInCode.profile_type == CodeProfileType.service,
            ApartmentApproval.block_name == block_name,
            ApartmentApproval.apartment == apartment,
        )
    )
    if view == "verify":
        query = query.filter(
            ApartmentApproval.status == ApprovalStatus.pending,
            CheckInCode.guard_status == ApprovalStatus.pending,
        )
    elif view == "approved":
        query = query.filter(
            ApartmentApproval.status == ApprovalStatus.approved,
            CheckInCode.guard_status == ApprovalStatus.approved,
        )
    elif view == "rejected":
        query = query.filter(ApartmentApproval.status == ApprovalStatus.rejected)
    elif view == "expired":
        query = query.filter(
            or_(
                CheckInCode.guard_status == ApprovalStatus.rejected,
                and_(
                    CheckInCode.guard_status != ApprovalStatus.pending,
                    ApartmentApproval.status == ApprovalStatus.pending,
                ),
            )
        )
    else:
        raise AppException(f"Unknown view '{view}'", status_code=400)

    rows = query.order_by(CheckInCode.created_at.desc()).limit(limit).all()
    return _serialize_many(db, rows)


def list_security_gate_passes(db: Session, ctx: AuthContext, view: str, limit: int = 50) -> list[dict[str, Any]]:
    require_guard(ctx)
    statuses = {
        "verification": ApprovalStatus.pending,
        "approved": ApprovalStatus.approved,
        "expired": ApprovalStatus.rejected,
    }
    if view not in statuses:
        raise AppException(f"Unknown view '{view}'", status_code=400)

    rows = (
        db.query(CheckInCode)
        .filter(
            CheckInCode.society_name == ctx.society_name,
            CheckInCode.profile_type == CodeProfileType.service,
            CheckInCode.guard_status == statuses[view],
        )
        .order_by(CheckInCode.created_at.desc())
        .limit(limit)
        .all()
    )
    return _serialize_many(db, rows)


def pending_gate_pass_deadlines(db: Session) -> list[tuple[str, datetime]]:
    """Deadlines of every unsettled gate pass, used to re-arm timers after a restart."""
    rows = (
        db.query(CheckInCode.id, CheckInCode.resolution_deadline)
        .filter(
            CheckInCode.profile_type == CodeProfileType.service,
            CheckInCode.guard_status == ApprovalStatus.pending,
            CheckInCode.resolution_deadline.is_not(None),
        )
        .order_by(CheckInCode.resolution_deadline.asc())
        .all()
    )
    return [(gate_pass_id, deadline) for gate_pass_id, deadline in rows]
