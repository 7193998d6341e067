from gateguard.db.models.approval import ApartmentApproval, ApprovalRecordType, ApprovalStatus
from gateguard.db.models.audit import AuditLog
from gateguard.db.models.checkin_code import CheckInCode, CodeProfileType
from gateguard.db.models.entry import Entry, EntryType
from gateguard.db.models.membership import MemberRole, MembershipStatus, SocietyMember
from gateguard.db.models.notification import Notification
from gateguard.db.models.pre_approved import PreApproved
from gateguard.db.models.user import User

__all__ = [
    "ApartmentApproval",
    "ApprovalRecordType",
    "ApprovalStatus",
    "AuditLog",
    "CheckInCode",
    "CodeProfileType",
    "Entry",
    "EntryType",
    "MemberRole",
    "MembershipStatus",
    "Notification",
    "PreApproved",
    "SocietyMember",
    "User",
]
