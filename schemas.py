"""
Database Schemas for BloodLink

Each document model corresponds to a MongoDB collection (lowercased class
name, e.g. BloodRequest -> "bloodrequest"). Enum fields are stored as their
plain string values.
"""

from datetime import datetime, date
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, EmailStr

BLOOD_GROUP_PATTERN = "^(A|B|AB|O)[+-]$"


class Component(str, Enum):
    WHOLE_BLOOD = "WHOLE_BLOOD"
    RED_CELLS = "RED_CELLS"
    PLASMA = "PLASMA"
    PLATELETS = "PLATELETS"
    CRYOPRECIPITATE = "CRYOPRECIPITATE"


class Urgency(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class RequestStatus(str, Enum):
    OPEN = "OPEN"
    ASSIGNED = "ASSIGNED"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class UnitStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    ISSUED = "ISSUED"
    EXPIRED = "EXPIRED"
    TESTED = "TESTED"
    QUARANTINED = "QUARANTINED"


class ResponderType(str, Enum):
    DONOR = "DONOR"
    BLOOD_BANK = "BLOOD_BANK"


class AssignedVia(str, Enum):
    MANUAL = "MANUAL"
    RESERVATION = "RESERVATION"


class OrgType(str, Enum):
    HOSPITAL = "HOSPITAL"
    BANK = "BANK"


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


class Schema(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)


class Document(Schema):
    id: Optional[str] = Field(None, description="String form of the Mongo _id")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class GeoPoint(Schema):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


# Organizations and donors
class Organization(Document):
    name: str
    org_type: OrgType = Field(OrgType.HOSPITAL, description="HOSPITAL | BANK")
    city: Optional[str] = None
    state: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    location: Optional[GeoPoint] = None


class Donor(Document):
    name: str
    blood_group: str = Field(..., pattern=BLOOD_GROUP_PATTERN)
    gender: Optional[Gender] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    location: Optional[GeoPoint] = None
    last_donation_date: Optional[datetime] = None
    donation_count: int = 0
    is_eligible: bool = Field(True, description="False while administratively deferred")


# Requests
class Assignment(Schema):
    type: ResponderType
    donor_id: Optional[str] = None
    organization_id: Optional[str] = None

    @property
    def responder_id(self) -> Optional[str]:
        return self.donor_id if self.type == ResponderType.DONOR else self.organization_id


class BloodRequest(Document):
    organization_id: str = Field(..., description="Requesting organization _id")
    blood_group: str = Field(..., pattern=BLOOD_GROUP_PATTERN)
    component: Component = Component.WHOLE_BLOOD
    units_needed: int = Field(..., ge=1)
    urgency: Urgency = Urgency.MEDIUM
    status: RequestStatus = RequestStatus.OPEN
    assigned_to: Optional[Assignment] = None
    assigned_via: Optional[AssignedVia] = Field(None, description="MANUAL (assign) | RESERVATION (bank reserve)")
    reserved_by: Optional[str] = Field(None, description="Bank holding units against this request")
    reserved_count: int = 0
    issued_count: int = 0
    location: Optional[GeoPoint] = None
    contact_person: Optional[str] = None
    contact_phone: Optional[str] = None
    case_details: Optional[str] = None
    patient_age: Optional[int] = Field(None, ge=0)
    patient_gender: Optional[Gender] = None
    required_by: Optional[datetime] = None
    fulfilled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    expired_at: Optional[datetime] = None

    @property
    def remaining_units(self) -> int:
        return self.units_needed - self.reserved_count - self.issued_count


class DonorInterest(Document):
    donor_id: str
    request_id: str


# Inventory
class BloodUnit(Document):
    organization_id: str = Field(..., description="Owning blood bank _id")
    blood_group: str = Field(..., pattern=BLOOD_GROUP_PATTERN)
    component: Component = Component.WHOLE_BLOOD
    status: UnitStatus = UnitStatus.AVAILABLE
    barcode: Optional[str] = None
    collection_date: datetime
    expiry_date: datetime
    donor_id: Optional[str] = None
    reserved_for: Optional[str] = None
    reserved_at: Optional[datetime] = None
    issued_to: Optional[str] = None
    issued_at: Optional[datetime] = None


class Notification(Document):
    recipient_id: str
    recipient_type: str = Field(..., description="donor | organization")
    request_id: Optional[str] = None
    message: str
    channel: str = Field("in-app")
    status: str = Field("sent")


# Read models returned by the matching engine
class DonorMatch(Schema):
    donor_id: str
    name: str
    blood_group: str
    phone: Optional[str] = None
    distance_km: Optional[float] = None
    interested_at: datetime
    next_eligible_date: Optional[date] = None


class BankMatch(Schema):
    organization_id: str
    name: str
    city: Optional[str] = None
    phone: Optional[str] = None
    available_units: int
    can_fulfill: bool
    distance_km: Optional[float] = None
    soonest_expiry: Optional[datetime] = None


class MatchResult(Schema):
    request_id: str
    donors: List[DonorMatch] = Field(default_factory=list)
    blood_banks: List[BankMatch] = Field(default_factory=list)


class IncomingRequest(Schema):
    request: BloodRequest
    available_units: int
    can_fulfill: bool
    distance_km: Optional[float] = None


class DonorFeedItem(Schema):
    request: BloodRequest
    distance_km: Optional[float] = None
    has_expressed_interest: bool = False
    interested_donors_count: int = 0


class DonorFeed(Schema):
    requests: List[DonorFeedItem] = Field(default_factory=list)
    eligible: bool
    next_eligible_date: Optional[date] = None
