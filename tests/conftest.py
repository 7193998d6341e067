import json
import os
from datetime import datetime

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PUSH_BACKEND", "socket")

import pytest
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gateguard.core.config import get_settings
from gateguard.db import models  # noqa: F401
from gateguard.db.base import Base
from gateguard.db.models import MemberRole, MembershipStatus, SocietyMember, User
from gateguard.services.membership_service import resolve_auth_context
from gateguard.services.push_service import NotificationDispatcher

SOCIETY = "Green Meadows"


class FakeDispatcher(NotificationDispatcher):
    """Records pushes instead of sending them."""

    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []
        self.cancelled: list[tuple[str, str]] = []

    async def notify(self, device_token, action, payload):
        self.sent.append((device_token, action, json.loads(payload)))
        return None

    async def cancel(self, device_token, notification_id):
        self.cancelled.append((device_token, notification_id))

    def tokens_for(self, action: str) -> list[str]:
        return sorted(token for token, sent_action, _ in self.sent if sent_action == action)

    def actions(self) -> list[str]:
        return [action for _, action, _ in self.sent]

    def clear(self):
        self.sent.clear()
        self.cancelled.clear()


class FakeScheduler:
    def __init__(self):
        self.scheduled: list[tuple[str, datetime]] = []

    def schedule(self, gate_pass_id, deadline):
        self.scheduled.append((gate_pass_id, deadline))


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def make_member(db):
    """Create an approved society member and return their request context.

    The device token is ``tok-<name>`` so tests can assert on push targets.
    """

    def _make(
        name: str,
        role: MemberRole = MemberRole.resident,
        block: str | None = "A",
        apartment: str | None = "101",
        gate: str | None = None,
        society: str = SOCIETY,
        with_token: bool = True,
    ):
        user = User(
            user_name=name,
            email=f"{name}@example.com",
            phone_no="9000000000",
            device_token=f"tok-{name}" if with_token else None,
        )
        db.add(user)
        db.flush()
        is_resident = role == MemberRole.resident
        db.add(
            SocietyMember(
                user_id=user.id,
                society_name=society,
                block_name=block if is_resident else None,
                apartment=apartment if is_resident else None,
                profile_type=role,
                gate_assign=gate or ("Main Gate" if role == MemberRole.security else None),
                status=MembershipStatus.approved,
            )
        )
        db.commit()
        return resolve_auth_context(db, user.id)

    return _make


@pytest.fixture
def guard(make_member):
    return make_member("guard", role=MemberRole.security)


@pytest.fixture
def admin(make_member):
    return make_member("admin", role=MemberRole.admin)


def access_token(user_id: str, token_type: str = "access") -> str:
    settings = get_settings()
    return jwt.encode({"sub": user_id, "type": token_type}, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth_headers(ctx) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token(ctx.user_id)}"}


@pytest.fixture
def client(session_factory, dispatcher, scheduler):
    from fastapi.testclient import TestClient

    from gateguard.api.deps import get_gate_pass_scheduler, get_notification_dispatcher
    from gateguard.db.session import get_db
    from gateguard.main import fastapi_app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = _get_db
    fastapi_app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher
    fastapi_app.dependency_overrides[get_gate_pass_scheduler] = lambda: scheduler
    try:
        yield TestClient(fastapi_app)
    finally:
        fastapi_app.dependency_overrides.clear()
