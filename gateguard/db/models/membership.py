import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SqlEnum, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gateguard.db.base import Base


class MemberRole(str, Enum):
    resident = "resident"
    security = "security"
    admin = "admin"
    technician = "technician"


class MembershipStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class SocietyMember(Base):
    """A user's verified place in a society: which apartment they live in or which gate they guard."""

    __tablename__ = "society_members"
    __table_args__ = (
        Index("ix_society_members_apartment", "society_name", "block_name", "apartment"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    society_name: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    block_name: Mapped[str | None] = mapped_column(String(60), nullable=True)
    apartment: Mapped[str | None] = mapped_column(String(60), nullable=True)
    profile_type: Mapped[MemberRole] = mapped_column(SqlEnum(MemberRole), nullable=False)
    gate_assign: Mapped[str | None] = mapped_column(String(60), nullable=True)
    status: Mapped[MembershipStatus] = mapped_column(
        SqlEnum(MembershipStatus), nullable=False, default=MembershipStatus.pending
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="memberships")
