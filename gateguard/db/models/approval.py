import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SqlEnum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from gateguard.db.base import Base


class ApprovalStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class ApprovalRecordType(str, Enum):
    entry = "entry"
    gate_pass = "gate_pass"


class ApartmentApproval(Base):
    """Approval state of one target apartment within one entry or gate pass.

    Rows are created ``pending`` together with their parent and are resolved at
    most once through a conditional update on ``status``.
    """

    __tablename__ = "apartment_approvals"
    __table_args__ = (
        UniqueConstraint("record_type", "record_id", "block_name", "apartment", name="uq_apartment_approval_target"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    record_type: Mapped[ApprovalRecordType] = mapped_column(SqlEnum(ApprovalRecordType), nullable=False)
    record_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    block_name: Mapped[str] = mapped_column(String(60), nullable=False)
    apartment: Mapped[str] = mapped_column(String(60), nullable=False)
    status: Mapped[ApprovalStatus] = mapped_column(
        SqlEnum(ApprovalStatus), nullable=False, default=ApprovalStatus.pending, index=True
    )
    approved_by: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def apartment_ref(self) -> tuple[str, str]:
        return (self.block_name, self.apartment)
