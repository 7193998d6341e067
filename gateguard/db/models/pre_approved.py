import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum as SqlEnum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from gateguard.db.base import Base
from gateguard.db.models.approval import ApprovalStatus
from gateguard.db.models.checkin_code import CodeProfileType


class PreApproved(Base):
    __tablename__ = "pre_approved_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    checkin_code_id: Mapped[str] = mapped_column(String(36), ForeignKey("checkin_codes.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    mob_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    profile_type: Mapped[CodeProfileType] = mapped_column(SqlEnum(CodeProfileType), nullable=False)
    society_name: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    block_name: Mapped[str | None] = mapped_column(String(60), nullable=True)
    apartment: Mapped[str | None] = mapped_column(String(60), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    allowed_by: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    guard_status: Mapped[ApprovalStatus] = mapped_column(
        SqlEnum(ApprovalStatus), nullable=False, default=ApprovalStatus.approved
    )
    has_exited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    entry_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    exit_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
