import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Enum as SqlEnum, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from gateguard.db.base import Base
from gateguard.db.models.approval import ApprovalStatus


class CodeProfileType(str, Enum):
    guest = "guest"
    cab = "cab"
    delivery = "delivery"
    service = "service"
    other = "other"
    resident = "resident"
    security = "security"


class CheckInCode(Base):
    __tablename__ = "checkin_codes"
    __table_args__ = (Index("ix_checkin_codes_society_code", "society_name", "code"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    issued_by: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    approved_by: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    # Set for permanent member codes: the resident or guard the code belongs to.
    holder_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    mob_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    profile_type: Mapped[CodeProfileType] = mapped_column(SqlEnum(CodeProfileType), nullable=False)
    vehicle_no: Mapped[str | None] = mapped_column(String(40), nullable=True)
    purpose: Mapped[str | None] = mapped_column(String(255), nullable=True)
    society_name: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    block_name: Mapped[str | None] = mapped_column(String(60), nullable=True)
    apartment: Mapped[str | None] = mapped_column(String(60), nullable=True)
    start_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expiry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_pre_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # Gate passes only: the guard gate, auto-resolved when the approval window closes.
    guard_status: Mapped[ApprovalStatus | None] = mapped_column(SqlEnum(ApprovalStatus), nullable=True, index=True)
    guard_resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolution_deadline: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    notification_id: Mapped[str] = mapped_column(String(36), nullable=False, default=lambda: str(uuid.uuid4()))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_gate_pass(self) -> bool:
        return self.profile_type == CodeProfileType.service

    @property
    def is_permanent(self) -> bool:
        return self.expiry_at is None
