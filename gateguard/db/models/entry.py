import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Enum as SqlEnum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from gateguard.db.base import Base
from gateguard.db.models.approval import ApprovalStatus


class EntryType(str, Enum):
    delivery = "delivery"
    guest = "guest"
    cab = "cab"
    service = "service"
    other = "other"


class Entry(Base):
    __tablename__ = "delivery_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    mob_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    profile_img: Mapped[str | None] = mapped_column(String(500), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    company_logo: Mapped[str | None] = mapped_column(String(500), nullable=True)
    vehicle_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    vehicle_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    entry_type: Mapped[EntryType] = mapped_column(SqlEnum(EntryType), nullable=False, index=True)
    society_name: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    gate_name: Mapped[str | None] = mapped_column(String(60), nullable=True)
    guard_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    guard_status: Mapped[ApprovalStatus] = mapped_column(
        SqlEnum(ApprovalStatus), nullable=False, default=ApprovalStatus.pending, index=True
    )
    guard_resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    has_exited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    entry_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    exit_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # Lets resident apps drop the approval prompt once someone in the apartment answered.
    notification_id: Mapped[str] = mapped_column(String(36), nullable=False, default=lambda: str(uuid.uuid4()))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
