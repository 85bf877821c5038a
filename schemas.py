"""
Database Schemas for Coco Transport

Each Pydantic model validates a document stored in MongoDB.

- Driver -> drivers
- Vehicle -> vehicles
- TransportJob -> transport_jobs (created by the dispatch coordinator,
  patched through TransportJobUpdate)
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

# Statuses a client may set. on-duty and in-use only come from job reservations.
DriverStatus = Literal["available", "off-duty"]
VehicleStatus = Literal["available", "under-maintenance"]
VehicleType = Literal["truck", "van", "pickup", "other"]
JobType = Literal["collect-waste", "transport-products"]
WasteType = Literal["coconut-shells", "coconut-husk", "coconut-water", "other"]
JobStatus = Literal["pending", "in-progress", "completed", "cancelled"]

JOB_TYPES = ("collect-waste", "transport-products")
WASTE_TYPES = ("coconut-shells", "coconut-husk", "coconut-water", "other")
TERMINAL_STATUSES = ("completed", "cancelled")

LICENSE_PLATE_PATTERN = r"^[a-zA-Z0-9-]+$"


def _check_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    stripped = value.strip()
    body = stripped[1:] if stripped.startswith("+") else stripped
    digits = body.replace(" ", "").replace("-", "")
    if not digits.isdigit() or not 7 <= len(digits) <= 15:
        raise ValueError("Invalid phone number")
    return stripped


class GeoPoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, description="Latitude")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude")


class Driver(BaseModel):
    name: str = Field(..., min_length=1, description="Full name")
    phone: str = Field(..., description="Mobile number")
    email: EmailStr
    licenseNumber: str = Field(..., min_length=1)
    status: DriverStatus = "available"
    dateOfJoining: Optional[datetime] = None

    @field_validator("phone")
    @classmethod
    def check_phone(cls, value):
        return _check_phone(value)


class DriverUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    licenseNumber: Optional[str] = Field(None, min_length=1)
    status: Optional[DriverStatus] = None

    @field_validator("phone")
    @classmethod
    def check_phone(cls, value):
        return _check_phone(value)


class Vehicle(BaseModel):
    vehicleType: VehicleType
    licensePlate: str = Field(..., pattern=LICENSE_PLATE_PATTERN)
    capacity: float = Field(..., gt=0, description="Load capacity, fixed at creation")
    status: VehicleStatus = "available"
    lastMaintenanceDate: Optional[datetime] = None


class VehicleUpdate(BaseModel):
    vehicleType: Optional[VehicleType] = None
    licensePlate: Optional[str] = Field(None, pattern=LICENSE_PLATE_PATTERN)
    status: Optional[VehicleStatus] = None
    lastMaintenanceDate: Optional[datetime] = None


class TransportJobUpdate(BaseModel):
    """
    Patch applied to an existing transport job. Assignment references and
    creation time are not part of it: they are fixed when the job is created.
    """
    jobType: Optional[JobType] = None
    startPoint: Optional[GeoPoint] = None
    endPoint: Optional[GeoPoint] = None
    wasteType: Optional[WasteType] = None
    quantity: Optional[float] = Field(None, gt=0)
    specialRequirements: Optional[str] = None
    status: Optional[JobStatus] = Field(
        None,
        description="Job status: pending|in-progress|completed|cancelled",
    )
    completedAt: Optional[datetime] = None
