from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Naive UTC timestamp; the stores never mix aware and naive values."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UrgencyLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"

    @classmethod
    def parse(cls, value: object) -> "UrgencyLevel":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise ValueError(f"unknown urgency level: {value!r}")


class RequestStatus(str, Enum):
    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    PENDING_COMPLETION = "Pending Completion"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.CANCELLED)

    @classmethod
    def parse(cls, value: object) -> "RequestStatus":
        """Accept canonical values plus the spellings older clients and rows use."""
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower().replace("_", "").replace(" ", "").replace("-", "")
        for member in cls:
            if member.value.lower().replace(" ", "") == key:
                return member
        raise ValueError(f"unknown request status: {value!r}")


TERMINAL_STATUSES = frozenset(s for s in RequestStatus if s.is_terminal)


class OfferStatus(str, Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: object) -> "OfferStatus":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text == "pending":
            return cls.ACTIVE
        return cls(text)


# Offers that count towards a request's helper count
COUNTED_OFFER_STATUSES = frozenset(
    {OfferStatus.ACTIVE, OfferStatus.ACCEPTED, OfferStatus.COMPLETED}
)


class CamelModel(BaseModel):
    """Base for records exposed over the API with camelCase keys."""

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class NewHelpRequest(BaseModel):
    """A validated, moderated request ready to be inserted."""

    title: str
    description: str
    latitude: float
    longitude: float
    contact: str
    address: Optional[str] = None
    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    author_id: str
    author_name: str

    # Moderation annotations
    category: Optional[str] = None
    category_icon: Optional[str] = None
    category_name: Optional[str] = None
    detected_urgency: Optional[UrgencyLevel] = None
    estimated_time: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    suggested_title: Optional[str] = None
    safety_check: Optional[str] = None
    safety_reason: Optional[str] = None


class HelpRequest(CamelModel):
    id: str
    title: str
    description: str
    latitude: float
    longitude: float
    contact: str
    address: Optional[str] = None
    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    status: RequestStatus = RequestStatus.OPEN
    author_id: str
    author_name: str
    helpers_count: int = 0
    created_at: datetime
    updated_at: datetime

    category: Optional[str] = None
    category_icon: Optional[str] = None
    category_name: Optional[str] = None
    detected_urgency: Optional[UrgencyLevel] = None
    estimated_time: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    suggested_title: Optional[str] = None
    safety_check: Optional[str] = None
    safety_reason: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, v):
        return RequestStatus.parse(v)

    @field_validator("urgency_level", mode="before")
    @classmethod
    def _coerce_urgency(cls, v):
        try:
            return UrgencyLevel.parse(v)
        except ValueError:
            return UrgencyLevel.MEDIUM

    @field_validator("detected_urgency", mode="before")
    @classmethod
    def _coerce_detected_urgency(cls, v):
        if v is None:
            return None
        try:
            return UrgencyLevel.parse(v)
        except ValueError:
            return None

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, v):
        return list(v or [])

    @property
    def is_flagged(self) -> bool:
        return self.safety_check == "flagged"


class HelpRequestView(HelpRequest):
    """A request as shown to one caller, with presentation annotations."""

    distance: Optional[str] = None
    duration: Optional[str] = None
    is_current_user_helping: bool = False


class HelpOffer(CamelModel):
    id: str
    request_id: str
    helper_id: str
    helper_name: str
    helper_email: Optional[str] = None
    status: OfferStatus = OfferStatus.ACTIVE
    offered_at: datetime
    completed_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, v):
        return OfferStatus.parse(v)


class OfferOutcome(BaseModel):
    """Result of an offer-help write: the request after the write, and whether
    a new offer row was actually inserted."""

    request: HelpRequest
    created: bool


class OfferChange(BaseModel):
    offer: HelpOffer
    request: HelpRequest


class HelperEntry(CamelModel):
    """An offer as listed to the request's author."""

    id: str
    name: str
    email: Optional[str] = None
    status: OfferStatus
    offered_at: datetime
    completed_at: Optional[datetime] = None


class HelperStatus(CamelModel):
    is_helping: bool
    help_offered_at: Optional[datetime] = None
