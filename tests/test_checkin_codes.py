from datetime import datetime, timedelta, timezone

import pytest

from gateguard.core.exceptions import AppException, InvalidTransitionError, NotFoundError, OutsideValidityWindowError
from gateguard.db.models import CheckInCode, CodeProfileType, MemberRole, PreApproved
from gateguard.schemas.checkin_code import CheckInCodeCreate, CheckInCodeReschedule
from gateguard.services import checkin_code_service as codes
from gateguard.services.notification_service import VISITOR_CHECKED_IN, VISITOR_EXITED
from gateguard.services.time_window_service import EXPIRED, NOT_YET_VALID, utcnow
from tests.conftest import SOCIETY


def _in(**delta) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**delta)


@pytest.fixture
def asha(make_member):
    return make_member("asha", block="A", apartment="101")


def _issue(db, ctx, start=None, expiry=None, profile_type=CodeProfileType.guest):
    return codes.issue_checkin_code(
        db,
        ctx,
        CheckInCodeCreate(
            name="Priya",
            mobNumber="9123456780",
            profileType=profile_type,
            checkInCodeStart=start,
            checkInCodeExpiry=expiry or _in(hours=2),
        ),
    )


async def test_redeem_checks_visitor_in_once(db, dispatcher, guard, asha):
    issued = _issue(db, asha)
    assert len(issued["checkInCode"]) == 6
    assert issued["isPreApproved"] is False

    visit = await codes.redeem_code(db, dispatcher, guard, issued["checkInCode"])
    assert visit["checkInCodeId"] == issued["id"]
    assert visit["allowedBy"] == guard.user_id
    assert visit["approvedBy"] == asha.user_id
    assert visit["blockName"] == "A"
    assert dispatcher.tokens_for(VISITOR_CHECKED_IN) == ["tok-asha"]

    code = db.query(CheckInCode).filter(CheckInCode.id == issued["id"]).populate_existing().one()
    assert code.is_pre_approved is True
    assert code.consumed_at is not None

    with pytest.raises(NotFoundError):
        await codes.redeem_code(db, dispatcher, guard, issued["checkInCode"])
    assert db.query(PreApproved).count() == 1


async def test_early_code_is_refused_and_left_unused(db, dispatcher, guard, asha):
    issued = _issue(db, asha, start=_in(hours=1), expiry=_in(hours=3))

    with pytest.raises(OutsideValidityWindowError) as exc_info:
        await codes.redeem_code(db, dispatcher, guard, issued["checkInCode"])
    assert exc_info.value.reason == NOT_YET_VALID
    assert exc_info.value.message.startswith("Please check your pre-approval time.")

    code = db.query(CheckInCode).filter(CheckInCode.id == issued["id"]).one()
    assert code.is_pre_approved is False
    assert db.query(PreApproved).count() == 0


async def test_expired_code_is_refused(db, dispatcher, guard, asha):
    now = utcnow()
    db.add(
        CheckInCode(
            code="482913",
            issued_by=asha.user_id,
            approved_by=asha.user_id,
            name="Priya",
            profile_type=CodeProfileType.guest,
            society_name=SOCIETY,
            start_at=now - timedelta(hours=3),
            expiry_at=now - timedelta(hours=1),
        )
    )
    db.commit()

    with pytest.raises(OutsideValidityWindowError) as exc_info:
        await codes.redeem_code(db, dispatcher, guard, "482913")
    assert exc_info.value.reason == EXPIRED
    assert exc_info.value.extra["validUntil"] == exc_info.value.valid_until


async def test_shared_value_redeems_the_open_window(db, dispatcher, guard, asha):
    now = utcnow()
    windows = {
        "morning": (now - timedelta(hours=1), now + timedelta(hours=1), now - timedelta(hours=3)),
        "evening": (now + timedelta(hours=5), now + timedelta(hours=8), now - timedelta(hours=2)),
    }
    rows = {}
    for name, (start_at, expiry_at, created_at) in windows.items():
        rows[name] = CheckInCode(
            code="123456",
            issued_by=asha.user_id,
            approved_by=asha.user_id,
            name=name,
            profile_type=CodeProfileType.guest,
            society_name=SOCIETY,
            start_at=start_at,
            expiry_at=expiry_at,
            created_at=created_at,
        )
        db.add(rows[name])
    db.commit()

    visit = await codes.redeem_code(db, dispatcher, guard, "123456")
    assert visit["checkInCodeId"] == rows["morning"].id

    with pytest.raises(OutsideValidityWindowError) as exc_info:
        await codes.redeem_code(db, dispatcher, guard, "123456")
    assert exc_info.value.reason == NOT_YET_VALID

    evening = db.query(CheckInCode).filter(CheckInCode.id == rows["evening"].id).populate_existing().one()
    assert evening.is_pre_approved is False


async def test_unknown_code_is_not_found(db, dispatcher, guard):
    with pytest.raises(NotFoundError) as exc_info:
        await codes.redeem_code(db, dispatcher, guard, "000000")
    assert exc_info.value.message == "CheckIn code is invalid or expired."


async def test_only_guards_redeem(db, dispatcher, asha):
    issued = _issue(db, asha)
    with pytest.raises(AppException) as exc_info:
        await codes.redeem_code(db, dispatcher, asha, issued["checkInCode"])
    assert exc_info.value.status_code == 403


def test_issue_validates_input(db, asha):
    with pytest.raises(AppException) as exc_info:
        _issue(db, asha, profile_type=CodeProfileType.service)
    assert exc_info.value.status_code == 400

    with pytest.raises(AppException):
        _issue(db, asha, start=_in(hours=3), expiry=_in(hours=1))


async def test_reschedule_until_used(db, dispatcher, guard, asha, make_member):
    issued = _issue(db, asha)
    new_expiry = _in(hours=5)

    updated = codes.reschedule_checkin_code(db, asha, issued["id"], CheckInCodeReschedule(checkInCodeExpiry=new_expiry))
    assert updated["checkInCodeExpiry"] == new_expiry.astimezone(timezone.utc).replace(tzinfo=None).isoformat()

    neighbour = make_member("meena", block="A", apartment="102")
    with pytest.raises(NotFoundError):
        codes.reschedule_checkin_code(db, neighbour, issued["id"], CheckInCodeReschedule(checkInCodeExpiry=new_expiry))

    await codes.redeem_code(db, dispatcher, guard, issued["checkInCode"])
    with pytest.raises(InvalidTransitionError):
        codes.reschedule_checkin_code(db, asha, issued["id"], CheckInCodeReschedule(checkInCodeExpiry=new_expiry))


async def test_expected_visitors_lists_unused_codes(db, dispatcher, guard, asha):
    first = _issue(db, asha)
    second = _issue(db, asha)
    await codes.redeem_code(db, dispatcher, guard, first["checkInCode"])

    assert [row["id"] for row in codes.list_expected_visitors(db, asha)] == [second["id"]]


async def test_permanent_code_is_never_consumed(db, dispatcher, guard, admin, make_member):
    member = make_member("kiran", block="C", apartment="301")

    issued = codes.issue_permanent_code(db, admin, member.user_id)
    assert issued["checkInCodeExpiry"] is None
    assert issued["profileType"] == "resident"
    assert codes.issue_permanent_code(db, admin, member.user_id)["id"] == issued["id"]

    await codes.redeem_code(db, dispatcher, guard, issued["checkInCode"])
    await codes.redeem_code(db, dispatcher, guard, issued["checkInCode"])

    visits = db.query(PreApproved).filter(PreApproved.checkin_code_id == issued["id"]).all()
    assert len(visits) == 2
    assert {visit.approved_by for visit in visits} == {member.user_id}
    assert db.query(CheckInCode).filter(CheckInCode.id == issued["id"]).one().is_pre_approved is False


def test_permanent_codes_need_admin_and_member(db, admin, asha, guard, make_member):
    with pytest.raises(AppException) as exc_info:
        codes.issue_permanent_code(db, asha, asha.user_id)
    assert exc_info.value.status_code == 403

    technician = make_member("tech", role=MemberRole.technician)
    with pytest.raises(NotFoundError):
        codes.issue_permanent_code(db, admin, technician.user_id)

    assert codes.issue_permanent_code(db, admin, guard.user_id)["profileType"] == "security"


async def test_pre_approved_exit(db, dispatcher, guard, asha):
    issued = _issue(db, asha)
    visit = await codes.redeem_code(db, dispatcher, guard, issued["checkInCode"])
    assert [row["id"] for row in codes.list_pre_approved(db, asha, "current")] == [visit["id"]]

    exited = await codes.exit_pre_approved(db, dispatcher, guard, visit["id"])
    assert exited["hasExited"] is True
    assert exited["exitTime"] is not None
    assert dispatcher.tokens_for(VISITOR_EXITED) == ["tok-asha"]
    assert codes.list_pre_approved(db, asha, "current") == []
    assert [row["id"] for row in codes.list_pre_approved(db, guard, "past")] == [visit["id"]]

    with pytest.raises(InvalidTransitionError):
        await codes.exit_pre_approved(db, dispatcher, guard, visit["id"])
