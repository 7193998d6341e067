from pydantic import BaseModel, Field

from gateguard.db.models import EntryType


class ApartmentTarget(BaseModel):
    blockName: str
    apartment: str


class VehicleDetails(BaseModel):
    vehicleType: str | None = None
    vehicleNumber: str | None = None


class EntryCreate(BaseModel):
    name: str = Field(min_length=1)
    mobNumber: str = Field(min_length=1)
    entryType: EntryType
    apartments: list[ApartmentTarget] = Field(min_length=1)
    profileImg: str | None = None
    companyName: str | None = None
    companyLogo: str | None = None
    vehicleDetails: VehicleDetails | None = None


class DecisionPayload(BaseModel):
    decision: str
