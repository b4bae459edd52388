from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PartyType(str, Enum):
    customer = "customer"
    worker = "worker"


class ServiceType(str, Enum):
    plumber = "plumber"
    electrician = "electrician"
    carpenter = "carpenter"
    painter = "painter"
    cleaner = "cleaner"
    mechanic = "mechanic"
    gardener = "gardener"
    mason = "mason"
    laborer = "laborer"
    other = "other"


def _check_coordinates(lat: float | None, lng: float | None) -> None:
    if (lat is None) != (lng is None):
        raise ValueError("lat and lng must be given together")


class PartyCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str = Field(min_length=3, max_length=255)
    phone: str = Field(min_length=3, max_length=50)
    address: str = Field("", max_length=500)
    party_type: PartyType
    services: list[ServiceType] = Field(default_factory=list)
    lat: float | None = Field(None, ge=-90, le=90)
    lng: float | None = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def validate_services(self) -> "PartyCreateRequest":
        if self.party_type == PartyType.worker and not self.services:
            raise ValueError("workers must offer at least one service")
        if self.party_type == PartyType.customer and self.services:
            raise ValueError("customers cannot offer services")
        _check_coordinates(self.lat, self.lng)
        return self


class PartyUpdateRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=120)
    email: str | None = Field(None, min_length=3, max_length=255)
    phone: str | None = Field(None, min_length=3, max_length=50)
    address: str | None = Field(None, max_length=500)
    lat: float | None = Field(None, ge=-90, le=90)
    lng: float | None = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def validate_location(self) -> "PartyUpdateRequest":
        _check_coordinates(self.lat, self.lng)
        return self


class DeviceRegistrationRequest(BaseModel):
    device_token: str = Field(min_length=1, max_length=512)


class AvailabilityRequest(BaseModel):
    is_active: bool


class PartyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    party_id: str
    name: str
    email: str
    phone: str
    address: str
    party_type: PartyType
    services: list[ServiceType] = Field(default_factory=list)
    rating: float
    rating_count: int
    total_jobs: int
    is_verified: bool
    is_active: bool
    lat: float | None = None
    lng: float | None = None
    created_at: datetime


class WorkerStats(BaseModel):
    total_bookings: int
    completed_bookings: int
    total_earnings: float
    average_rating: float
    total_reviews: int


class CustomerStats(BaseModel):
    total_bookings: int
    completed_bookings: int
    pending_bookings: int
