import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from gateguard.core.exceptions import AlreadyResolvedError, AppException, InvalidTransitionError, NotFoundError
from gateguard.db.models import ApprovalStatus, AuditLog, CheckInCode, MemberRole
from gateguard.schemas.checkin_code import GatePassCreate
from gateguard.schemas.entry import ApartmentTarget
from gateguard.services import approval_service, gate_pass_scheduler, gate_pass_service
from gateguard.services.checkin_code_service import redeem_code
from gateguard.services.gate_pass_scheduler import GatePassScheduler
from gateguard.services.notification_service import (
    GATE_PASS_ACTIVATED,
    GATE_PASS_EXPIRED_NO_APPROVAL,
    GATE_PASS_EXPIRED_NO_RESPONSE,
    GATE_PASS_RESPONSE,
    VERIFY_GATE_PASS,
)
from gateguard.services.time_window_service import utcnow


@pytest.fixture
def members(make_member, guard):
    return {
        "guard": guard,
        "night_guard": make_member("nightguard", role=MemberRole.security, gate="Back Gate"),
        "asha": make_member("asha", block="A", apartment="101"),
        "vikram": make_member("vikram", block="A", apartment="101"),
        "rohan": make_member("rohan", block="B", apartment="201"),
        "issuer": make_member("manager", role=MemberRole.admin),
    }


async def _create(db, dispatcher, scheduler, ctx, *apartments):
    return await gate_pass_service.create_gate_pass(
        db,
        dispatcher,
        scheduler,
        ctx,
        GatePassCreate(
            name="Plumber",
            mobNumber="9988776655",
            purpose="Kitchen sink repair",
            apartments=[ApartmentTarget(blockName=block, apartment=apt) for block, apt in apartments],
            checkInCodeExpiry=datetime.now(timezone.utc) + timedelta(hours=4),
        ),
    )


def _guard_status(db, gate_pass_id):
    return db.query(CheckInCode.guard_status).filter(CheckInCode.id == gate_pass_id).scalar()


async def test_create_arms_deadline_and_prompts_residents(db, dispatcher, scheduler, members):
    before = utcnow()
    data = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"), ("B", "201"))

    details = data["gatePassDetails"]
    assert data["profileType"] == "service"
    assert details["guardStatus"] == "pending"
    assert [item["status"] for item in details["apartments"]] == ["pending", "pending"]
    assert dispatcher.tokens_for(VERIFY_GATE_PASS) == ["tok-asha", "tok-rohan", "tok-vikram"]

    [(gate_pass_id, deadline)] = scheduler.scheduled
    assert gate_pass_id == data["id"]
    assert before + timedelta(minutes=20) <= deadline <= utcnow() + timedelta(minutes=20)


async def test_create_without_residents_fails(db, dispatcher, scheduler, members):
    with pytest.raises(NotFoundError):
        await _create(db, dispatcher, scheduler, members["issuer"], ("Z", "1"))
    assert scheduler.scheduled == []


async def test_only_residents_and_admins_issue_gate_passes(db, dispatcher, scheduler, members, make_member):
    technician = make_member("ravi", role=MemberRole.technician, block=None, apartment=None)
    with pytest.raises(AppException) as exc_info:
        await _create(db, dispatcher, scheduler, technician, ("A", "101"))
    assert exc_info.value.status_code == 403
    assert scheduler.scheduled == []
    assert db.query(CheckInCode).count() == 0

    data = await _create(db, dispatcher, scheduler, members["rohan"], ("A", "101"))
    assert data["gatePassDetails"]["guardStatus"] == "pending"


async def test_one_approval_activates_and_silent_apartment_expires(db, dispatcher, scheduler, members):
    data = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"), ("B", "201"))
    await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["asha"], data["id"], "approve")
    assert dispatcher.tokens_for(GATE_PASS_RESPONSE) == ["tok-manager"]
    dispatcher.clear()

    outcome = await gate_pass_service.resolve_gate_pass(db, dispatcher, data["id"])

    assert outcome == ApprovalStatus.approved
    assert _guard_status(db, data["id"]) == ApprovalStatus.approved
    assert dispatcher.tokens_for(GATE_PASS_ACTIVATED) == ["tok-asha", "tok-guard", "tok-nightguard", "tok-vikram"]
    assert dispatcher.tokens_for(GATE_PASS_EXPIRED_NO_RESPONSE) == ["tok-rohan"]
    assert dispatcher.tokens_for(GATE_PASS_EXPIRED_NO_APPROVAL) == []


async def test_no_approval_expires_gate_pass(db, dispatcher, scheduler, members):
    data = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"), ("B", "201"))
    await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["vikram"], data["id"], "reject")
    dispatcher.clear()

    outcome = await gate_pass_service.resolve_gate_pass(db, dispatcher, data["id"])

    assert outcome == ApprovalStatus.rejected
    assert dispatcher.tokens_for(GATE_PASS_EXPIRED_NO_APPROVAL) == ["tok-guard", "tok-nightguard"]
    assert dispatcher.tokens_for(GATE_PASS_EXPIRED_NO_RESPONSE) == ["tok-rohan"]
    assert dispatcher.tokens_for(GATE_PASS_ACTIVATED) == []


async def test_resolution_happens_once(db, dispatcher, scheduler, members):
    data = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"), ("B", "201"))
    dispatcher.clear()

    assert await gate_pass_service.resolve_gate_pass(db, dispatcher, data["id"]) == ApprovalStatus.rejected
    first_batch = list(dispatcher.sent)
    assert await gate_pass_service.resolve_gate_pass(db, dispatcher, data["id"]) is None

    assert dispatcher.sent == first_batch
    assert db.query(AuditLog).filter(AuditLog.action == "gate_pass.expired").count() == 1


async def test_every_apartment_answering_resolves_early(db, dispatcher, scheduler, members):
    data = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"), ("B", "201"))
    await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["asha"], data["id"], "approve")
    assert _guard_status(db, data["id"]) == ApprovalStatus.pending

    result = await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["rohan"], data["id"], "reject")
    assert result["gatePassDetails"]["guardStatus"] == "approved"

    # The deadline fire that follows is a no-op.
    assert await gate_pass_service.resolve_gate_pass(db, dispatcher, data["id"]) is None


async def test_responses_after_resolution_are_refused(db, dispatcher, scheduler, members):
    data = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"), ("B", "201"))
    await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["asha"], data["id"], "approve")

    with pytest.raises(AlreadyResolvedError):
        await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["vikram"], data["id"], "reject")

    await gate_pass_service.resolve_gate_pass(db, dispatcher, data["id"])
    with pytest.raises(InvalidTransitionError):
        await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["rohan"], data["id"], "approve")


async def test_answer_landing_after_settlement_is_refused(
    db, session_factory, dispatcher, scheduler, members, monkeypatch
):
    data = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"), ("B", "201"))
    load = gate_pass_service._load_gate_pass

    def load_then_settle_elsewhere(session, ctx, gate_pass_id):
        gate_pass = load(session, ctx, gate_pass_id)
        other = session_factory()
        try:
            other.query(CheckInCode).filter(CheckInCode.id == gate_pass_id).update(
                {CheckInCode.guard_status: ApprovalStatus.rejected}, synchronize_session=False
            )
            other.commit()
        finally:
            other.close()
        return gate_pass

    monkeypatch.setattr(gate_pass_service, "_load_gate_pass", load_then_settle_elsewhere)
    with pytest.raises(InvalidTransitionError):
        await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["asha"], data["id"], "approve")

    assert _guard_status(db, data["id"]) == ApprovalStatus.rejected
    assert approval_service.status_for(db, gate_pass_service.RECORD, data["id"], "A", "101") == ApprovalStatus.pending
    assert dispatcher.tokens_for(GATE_PASS_RESPONSE) == []


async def test_guard_adds_apartment_while_pending(db, dispatcher, scheduler, members, make_member):
    make_member("meena", block="A", apartment="102")
    data = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"))
    dispatcher.clear()

    result = await gate_pass_service.add_gate_pass_apartment(
        db, dispatcher, members["guard"], data["id"], ApartmentTarget(blockName="A", apartment="102")
    )
    assert [item["apartment"] for item in result["gatePassDetails"]["apartments"]] == ["101", "102"]
    assert dispatcher.tokens_for(VERIFY_GATE_PASS) == ["tok-meena"]

    with pytest.raises(AppException) as exc_info:
        await gate_pass_service.add_gate_pass_apartment(
            db, dispatcher, members["guard"], data["id"], ApartmentTarget(blockName="A", apartment="102")
        )
    assert exc_info.value.status_code == 409

    await gate_pass_service.resolve_gate_pass(db, dispatcher, data["id"])
    with pytest.raises(InvalidTransitionError):
        await gate_pass_service.add_gate_pass_apartment(
            db, dispatcher, members["guard"], data["id"], ApartmentTarget(blockName="B", apartment="201")
        )


async def test_gate_pass_redeemable_only_once_activated(db, dispatcher, scheduler, members):
    data = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"))

    with pytest.raises(InvalidTransitionError):
        await redeem_code(db, dispatcher, members["guard"], data["checkInCode"])

    await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["asha"], data["id"], "approve")
    visit = await redeem_code(db, dispatcher, members["guard"], data["checkInCode"])
    assert visit["profileType"] == "service"


async def test_listings(db, dispatcher, scheduler, members):
    pending = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"), ("B", "201"))
    activated = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"), ("B", "201"))
    await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["asha"], activated["id"], "approve")
    await gate_pass_service.resolve_gate_pass(db, dispatcher, activated["id"])

    def ids(rows):
        return [row["id"] for row in rows]

    guard = members["guard"]
    assert ids(gate_pass_service.list_security_gate_passes(db, guard, "verification")) == [pending["id"]]
    assert ids(gate_pass_service.list_security_gate_passes(db, guard, "approved")) == [activated["id"]]
    assert gate_pass_service.list_security_gate_passes(db, guard, "expired") == []

    assert ids(gate_pass_service.list_resident_gate_passes(db, members["asha"], "verify")) == [pending["id"]]
    assert ids(gate_pass_service.list_resident_gate_passes(db, members["asha"], "approved")) == [activated["id"]]
    assert ids(gate_pass_service.list_resident_gate_passes(db, members["rohan"], "expired")) == [activated["id"]]


async def test_scheduler_fires_once_per_gate_pass():
    calls = []

    async def resolver(gate_pass_id):
        calls.append(gate_pass_id)

    scheduler = GatePassScheduler(resolver=resolver)
    task = scheduler.schedule("gp-1", utcnow() - timedelta(seconds=1))
    assert scheduler.schedule("gp-1", utcnow()) is task
    await task

    assert calls == ["gp-1"]
    assert scheduler.pending_ids() == set()


async def test_scheduler_logs_and_survives_resolver_failure(caplog):
    async def resolver(gate_pass_id):
        raise RuntimeError("database is down")

    scheduler = GatePassScheduler(resolver=resolver)
    await scheduler.schedule("gp-1", utcnow())

    assert "gate pass resolution failed gate_pass_id=gp-1" in caplog.text


async def test_duplicate_fires_send_one_batch(db, session_factory, dispatcher, scheduler, members, monkeypatch):
    monkeypatch.setattr(gate_pass_scheduler, "get_dispatcher", lambda: dispatcher)
    data = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"), ("B", "201"))
    await gate_pass_service.respond_to_gate_pass(db, dispatcher, members["asha"], data["id"], "approve")
    dispatcher.clear()

    timers = GatePassScheduler(session_factory=session_factory)
    await timers.schedule(data["id"], utcnow())
    first_batch = list(dispatcher.sent)
    await timers.schedule(data["id"], utcnow())

    assert first_batch
    assert dispatcher.sent == first_batch
    assert _guard_status(db, data["id"]) == ApprovalStatus.approved


async def test_rearm_pending_recreates_timers(db, dispatcher, scheduler, members):
    first = await _create(db, dispatcher, scheduler, members["issuer"], ("A", "101"))
    second = await _create(db, dispatcher, scheduler, members["issuer"], ("B", "201"))
    settled = await _create(db, dispatcher, scheduler, members["issuer"], ("B", "201"))
    await gate_pass_service.resolve_gate_pass(db, dispatcher, settled["id"])

    fired = []

    async def resolver(gate_pass_id):
        fired.append(gate_pass_id)

    timers = GatePassScheduler(resolver=resolver)
    assert timers.rearm_pending(db) == 2
    assert timers.pending_ids() == {first["id"], second["id"]}

    await timers.shutdown()
    assert fired == []
    assert timers.pending_ids() == set()

    # A deadline that passed while the process was down fires straight away.
    db.query(CheckInCode).filter(CheckInCode.id == first["id"]).update(
        {CheckInCode.resolution_deadline: utcnow() - timedelta(minutes=5)}, synchronize_session=False
    )
    db.commit()
    timers.rearm_pending(db)
    await asyncio.sleep(0.05)
    assert fired == [first["id"]]
    await timers.shutdown()
