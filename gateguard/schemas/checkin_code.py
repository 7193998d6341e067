from datetime import datetime

from pydantic import BaseModel, Field

from gateguard.db.models import CodeProfileType
from gateguard.schemas.entry import ApartmentTarget


class CheckInCodeCreate(BaseModel):
    name: str = Field(min_length=1)
    mobNumber: str | None = None
    profileType: CodeProfileType = CodeProfileType.guest
    vehicleNo: str | None = None
    # Naive datetimes are read as local gate time.
    checkInCodeStart: datetime | None = None
    checkInCodeExpiry: datetime | None = None


class CheckInCodeReschedule(BaseModel):
    checkInCodeStart: datetime | None = None
    checkInCodeExpiry: datetime


class CheckInCodeRedeem(BaseModel):
    checkInCode: str = Field(min_length=6, max_length=6)


class PermanentCodeCreate(BaseModel):
    userId: str


class GatePassCreate(BaseModel):
    name: str = Field(min_length=1)
    mobNumber: str | None = None
    purpose: str | None = None
    vehicleNo: str | None = None
    apartments: list[ApartmentTarget] = Field(min_length=1)
    checkInCodeStart: datetime | None = None
    checkInCodeExpiry: datetime | None = None
