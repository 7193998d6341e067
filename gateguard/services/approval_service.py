"""Per-apartment approval ledger shared by delivery entries and gate passes.

Every apartment targeted by a request owns one ``ApartmentApproval`` row. A
row leaves ``pending`` exactly once: the resolving UPDATE carries
``status = 'pending'`` in its WHERE clause, so when two members of the same
apartment answer at the same time only one statement matches a row.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Iterable

from sqlalchemy import ColumnElement, func
from sqlalchemy.orm import Session

from gateguard.core.context import AuthContext
from gateguard.core.exceptions import AlreadyResolvedError, AppException, InvalidTransitionError, NotFoundError
from gateguard.db.models import ApartmentApproval, ApprovalRecordType, ApprovalStatus
from gateguard.services.membership_service import ApartmentRef, apartment_residents
from gateguard.services.notification_service import Recipient, cancel_prompt, fan_out
from gateguard.services.push_service import NotificationDispatcher
from gateguard.services.time_window_service import utcnow

logger = logging.getLogger(__name__)

_DECISIONS = {
    "approve": ApprovalStatus.approved,
    "approved": ApprovalStatus.approved,
    "reject": ApprovalStatus.rejected,
    "rejected": ApprovalStatus.rejected,
}


def parse_decision(value: str) -> ApprovalStatus:
    decision = _DECISIONS.get((value or "").strip().lower())
    if decision is None:
        raise AppException("Decision must be 'approve' or 'reject'", status_code=400)
    return decision


def _record_query(db: Session, record_type: ApprovalRecordType, record_id: str):
    return db.query(ApartmentApproval).filter(
        ApartmentApproval.record_type == record_type,
        ApartmentApproval.record_id == record_id,
    )


def create_pending_approvals(
    db: Session,
    record_type: ApprovalRecordType,
    record_id: str,
    apartments: Iterable[ApartmentRef],
    start_position: int = 0,
) -> list[ApartmentApproval]:
    """Stage one pending row per apartment; the caller commits with its parent record."""
    rows = [
        ApartmentApproval(
            record_type=record_type,
            record_id=record_id,
            position=start_position + index,
            block_name=block_name,
            apartment=apartment,
            status=ApprovalStatus.pending,
        )
        for index, (block_name, apartment) in enumerate(apartments)
    ]
    db.add_all(rows)
    return rows


def list_approvals(db: Session, record_type: ApprovalRecordType, record_id: str) -> list[ApartmentApproval]:
    return _record_query(db, record_type, record_id).order_by(ApartmentApproval.position.asc()).all()


def approvals_for_records(
    db: Session, record_type: ApprovalRecordType, record_ids: Iterable[str]
) -> dict[str, list[ApartmentApproval]]:
    ids = list(record_ids)
    if not ids:
        return {}
    rows = (
        db.query(ApartmentApproval)
        .filter(ApartmentApproval.record_type == record_type, ApartmentApproval.record_id.in_(ids))
        .order_by(ApartmentApproval.record_id, ApartmentApproval.position.asc())
        .all()
    )
    grouped: dict[str, list[ApartmentApproval]] = defaultdict(list)
    for row in rows:
        grouped[row.record_id].append(row)
    return dict(grouped)


def status_for(
    db: Session, record_type: ApprovalRecordType, record_id: str, block_name: str, apartment: str
) -> ApprovalStatus | None:
    row = (
        _record_query(db, record_type, record_id)
        .filter(ApartmentApproval.block_name == block_name, ApartmentApproval.apartment == apartment)
        .with_entities(ApartmentApproval.status)
        .first()
    )
    return row[0] if row else None


def has_resolved_apartment(db: Session, record_type: ApprovalRecordType, record_id: str) -> bool:
    return (
        _record_query(db, record_type, record_id)
        .filter(ApartmentApproval.status != ApprovalStatus.pending)
        .first()
        is not None
    )


def pending_count(db: Session, record_type: ApprovalRecordType, record_id: str) -> int:
    return (
        _record_query(db, record_type, record_id)
        .filter(ApartmentApproval.status == ApprovalStatus.pending)
        .with_entities(func.count(ApartmentApproval.id))
        .scalar()
        or 0
    )


def resolve(
    db: Session,
    record_type: ApprovalRecordType,
    record_id: str,
    block_name: str,
    apartment: str,
    actor_id: str,
    decision: ApprovalStatus,
    now: datetime | None = None,
    parent_open: ColumnElement[bool] | None = None,
) -> ApartmentApproval:
    """Move one apartment row out of pending.

    ``parent_open`` is an extra SQL condition evaluated in the same UPDATE,
    used to refuse answers once the parent record itself has been settled.
    """
    if decision == ApprovalStatus.pending:
        raise AppException("Decision must be 'approve' or 'reject'", status_code=400)

    actor_column = ApartmentApproval.approved_by if decision == ApprovalStatus.approved else ApartmentApproval.rejected_by
    criteria = [
        ApartmentApproval.block_name == block_name,
        ApartmentApproval.apartment == apartment,
        ApartmentApproval.status == ApprovalStatus.pending,
    ]
    if parent_open is not None:
        criteria.append(parent_open)
    updated = (
        _record_query(db, record_type, record_id)
        .filter(*criteria)
        .update(
            {
                ApartmentApproval.status: decision,
                actor_column: actor_id,
                ApartmentApproval.resolved_at: now or utcnow(),
            },
            synchronize_session=False,
        )
    )
    if not updated:
        db.rollback()
        current = status_for(db, record_type, record_id, block_name, apartment)
        if current is None:
            raise NotFoundError("This apartment is not part of the request")
        if current == ApprovalStatus.pending:
            raise InvalidTransitionError("This request has already been resolved")
        raise AlreadyResolvedError()
    db.commit()

    return (
        _record_query(db, record_type, record_id)
        .filter(ApartmentApproval.block_name == block_name, ApartmentApproval.apartment == apartment)
        .populate_existing()
        .one()
    )


async def submit_response(
    db: Session,
    dispatcher: NotificationDispatcher,
    ctx: AuthContext,
    record_type: ApprovalRecordType,
    record_id: str,
    notification_id: str,
    decision: ApprovalStatus,
    notify: Iterable[Recipient],
    action: str,
    payload: dict,
    parent_open: ColumnElement[bool] | None = None,
) -> ApartmentApproval:
    """Resolve the caller's apartment, retract the prompt from co-residents and report the result."""
    ref = ctx.apartment_ref
    if not ref:
        raise AppException("Only residents with an apartment can respond", status_code=403)

    row = resolve(db, record_type, record_id, ref[0], ref[1], ctx.user_id, decision, parent_open=parent_open)
    logger.info(
        "approval resolved record_type=%s record_id=%s apartment=%s/%s status=%s",
        record_type.value,
        record_id,
        ref[0],
        ref[1],
        row.status.value,
    )

    others = [
        recipient
        for recipient in apartment_residents(db, ctx.society_name, ref[0], ref[1])
        if recipient.user_id != ctx.user_id
    ]
    await cancel_prompt(dispatcher, others, notification_id)
    await fan_out(
        db,
        dispatcher,
        notify,
        action,
        {
            **payload,
            "status": row.status.value,
            "blockName": row.block_name,
            "apartment": row.apartment,
            "respondedBy": ctx.user_id,
            "notificationId": notification_id,
        },
        correlation_id=notification_id,
    )
    return row


def serialize_approval(row: ApartmentApproval) -> dict:
    return {
        "blockName": row.block_name,
        "apartment": row.apartment,
        "status": row.status.value,
        "approvedBy": row.approved_by,
        "rejectedBy": row.rejected_by,
        "resolvedAt": row.resolved_at.isoformat() if row.resolved_at else None,
    }
