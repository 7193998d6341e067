import pytest
from sqlalchemy import select

from gateguard.core.exceptions import (
    ALREADY_RESOLVED_MESSAGE,
    AlreadyResolvedError,
    AppException,
    InvalidTransitionError,
    NotFoundError,
)
from gateguard.db.models import ApartmentApproval, ApprovalRecordType, ApprovalStatus, Entry, EntryType
from gateguard.services import approval_service
from tests.conftest import SOCIETY

RECORD = ApprovalRecordType.entry


@pytest.fixture
def entry(db, guard):
    row = Entry(
        name="ravi",
        mob_number="9876543210",
        entry_type=EntryType.delivery,
        society_name=SOCIETY,
        guard_id=guard.user_id,
        guard_status=ApprovalStatus.pending,
    )
    db.add(row)
    db.flush()
    approval_service.create_pending_approvals(db, RECORD, row.id, [("A", "101"), ("A", "102"), ("B", "201")])
    db.commit()
    return row


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("approve", ApprovalStatus.approved),
        ("Approved", ApprovalStatus.approved),
        (" reject ", ApprovalStatus.rejected),
        ("rejected", ApprovalStatus.rejected),
    ],
)
def test_parse_decision(raw, expected):
    assert approval_service.parse_decision(raw) == expected


def test_parse_decision_rejects_unknown_value():
    with pytest.raises(AppException) as exc_info:
        approval_service.parse_decision("maybe")
    assert exc_info.value.status_code == 400


def test_pending_rows_are_created_in_order(db, entry):
    rows = approval_service.list_approvals(db, RECORD, entry.id)
    assert [row.apartment_ref for row in rows] == [("A", "101"), ("A", "102"), ("B", "201")]
    assert {row.status for row in rows} == {ApprovalStatus.pending}
    assert approval_service.pending_count(db, RECORD, entry.id) == 3
    assert not approval_service.has_resolved_apartment(db, RECORD, entry.id)


def test_second_response_is_rejected(db, entry):
    row = approval_service.resolve(db, RECORD, entry.id, "A", "101", "user-1", ApprovalStatus.approved)
    assert row.status == ApprovalStatus.approved
    assert row.approved_by == "user-1"
    assert row.resolved_at is not None

    with pytest.raises(AlreadyResolvedError) as exc_info:
        approval_service.resolve(db, RECORD, entry.id, "A", "101", "user-2", ApprovalStatus.rejected)
    assert exc_info.value.message == ALREADY_RESOLVED_MESSAGE
    assert approval_service.status_for(db, RECORD, entry.id, "A", "101") == ApprovalStatus.approved
    assert approval_service.pending_count(db, RECORD, entry.id) == 2


def test_unknown_apartment_is_not_found(db, entry):
    with pytest.raises(NotFoundError):
        approval_service.resolve(db, RECORD, entry.id, "C", "999", "user-1", ApprovalStatus.approved)


def test_stale_concurrent_responses_resolve_once(session_factory, entry):
    first, second = session_factory(), session_factory()
    try:
        # Both members load the prompt while it is still pending.
        assert approval_service.status_for(first, RECORD, entry.id, "A", "102") == ApprovalStatus.pending
        assert approval_service.status_for(second, RECORD, entry.id, "A", "102") == ApprovalStatus.pending

        approval_service.resolve(first, RECORD, entry.id, "A", "102", "user-1", ApprovalStatus.approved)
        with pytest.raises(AlreadyResolvedError):
            approval_service.resolve(second, RECORD, entry.id, "A", "102", "user-2", ApprovalStatus.rejected)

        row = [
            row
            for row in approval_service.list_approvals(second, RECORD, entry.id)
            if row.apartment_ref == ("A", "102")
        ][0]
        assert row.status == ApprovalStatus.approved
        assert row.approved_by == "user-1"
        assert row.rejected_by is None
    finally:
        first.close()
        second.close()


def test_approvals_are_grouped_per_record(db, entry):
    grouped = approval_service.approvals_for_records(db, RECORD, [entry.id, "missing"])
    assert list(grouped) == [entry.id]
    assert len(grouped[entry.id]) == 3
    assert approval_service.approvals_for_records(db, RECORD, []) == {}


def test_closed_parent_blocks_the_update(db, entry):
    parent_open = (
        select(Entry.id)
        .where(Entry.id == ApartmentApproval.record_id, Entry.guard_status == ApprovalStatus.pending)
        .exists()
    )
    db.query(Entry).filter(Entry.id == entry.id).update(
        {Entry.guard_status: ApprovalStatus.rejected}, synchronize_session=False
    )
    db.commit()

    with pytest.raises(InvalidTransitionError):
        approval_service.resolve(
            db, RECORD, entry.id, "A", "101", "user-1", ApprovalStatus.approved, parent_open=parent_open
        )
    assert approval_service.status_for(db, RECORD, entry.id, "A", "101") == ApprovalStatus.pending
