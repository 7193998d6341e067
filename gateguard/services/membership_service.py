from collections import defaultdict
from typing import Iterable

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from gateguard.core.context import AuthContext
from gateguard.core.exceptions import AppException
from gateguard.db.models import MemberRole, MembershipStatus, SocietyMember, User
from gateguard.services.notification_service import Recipient

ApartmentRef = tuple[str, str]


def normalize_apartments(apartments: Iterable[tuple[str, str]]) -> list[ApartmentRef]:
    """Trim and de-duplicate (block, apartment) pairs, keeping first-seen order."""
    result: list[ApartmentRef] = []
    for block_name, apartment in apartments:
        ref = ((block_name or "").strip(), (apartment or "").strip())
        if not ref[0] or not ref[1]:
            raise AppException("Block and apartment are required for every target", status_code=400)
        if ref not in result:
            result.append(ref)
    return result


def resolve_auth_context(db: Session, user_id: str) -> AuthContext:
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        raise AppException("User not found", status_code=401)

    member = (
        db.query(SocietyMember)
        .filter(SocietyMember.user_id == user_id, SocietyMember.status == MembershipStatus.approved)
        .order_by(SocietyMember.created_at.desc())
        .first()
    )
    if not member:
        raise AppException("Access Denied: You are not a registered member of any society", status_code=403)

    return AuthContext(
        user_id=user.id,
        role=member.profile_type.value,
        society_name=member.society_name,
        block_name=member.block_name,
        apartment=member.apartment,
        gate_name=member.gate_assign,
    )


def _recipient_query(db: Session, society_name: str, role: MemberRole):
    return (
        db.query(User.id, User.device_token, SocietyMember.block_name, SocietyMember.apartment)
        .join(SocietyMember, SocietyMember.user_id == User.id)
        .filter(
            SocietyMember.society_name == society_name,
            SocietyMember.profile_type == role,
            SocietyMember.status == MembershipStatus.approved,
            User.is_active.is_(True),
        )
    )


def residents_by_apartment(
    db: Session, society_name: str, apartments: Iterable[ApartmentRef]
) -> dict[ApartmentRef, list[Recipient]]:
    refs = list(apartments)
    if not refs:
        return {}
    rows = (
        _recipient_query(db, society_name, MemberRole.resident)
        .filter(
            or_(*[and_(SocietyMember.block_name == block, SocietyMember.apartment == apt) for block, apt in refs])
        )
        .all()
    )
    grouped: dict[ApartmentRef, list[Recipient]] = defaultdict(list)
    for user_id, device_token, block_name, apartment in rows:
        grouped[(block_name, apartment)].append(Recipient(user_id, device_token))
    return dict(grouped)


def apartment_residents(db: Session, society_name: str, block_name: str, apartment: str) -> list[Recipient]:
    return residents_by_apartment(db, society_name, [(block_name, apartment)]).get((block_name, apartment), [])


def society_guards(db: Session, society_name: str) -> list[Recipient]:
    rows = _recipient_query(db, society_name, MemberRole.security).all()
    return [Recipient(user_id, device_token) for user_id, device_token, _, _ in rows]


def recipients_for_users(db: Session, user_ids: Iterable[str | None]) -> list[Recipient]:
    ids = sorted({user_id for user_id in user_ids if user_id})
    if not ids:
        return []
    rows = db.query(User.id, User.device_token).filter(User.id.in_(ids), User.is_active.is_(True)).all()
    return [Recipient(user_id, device_token) for user_id, device_token in rows]


def get_member(db: Session, society_name: str, user_id: str) -> SocietyMember | None:
    return (
        db.query(SocietyMember)
        .filter(
            SocietyMember.society_name == society_name,
            SocietyMember.user_id == user_id,
            SocietyMember.status == MembershipStatus.approved,
        )
        .first()
    )
