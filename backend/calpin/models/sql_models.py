from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .help_request import OfferStatus, RequestStatus, UrgencyLevel, utcnow

# Base class for SQLAlchemy models
Base = declarative_base()


def generate_uuid():
    return str(uuid4())


class User(Base):
    """SQLAlchemy model for verified principals."""

    __tablename__ = "users"

    id = Column(String(255), primary_key=True)
    # Not unique: the verifier may issue a new id for an existing address
    email = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_seen_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<User(id='{self.id}', email='{self.email}')>"


class HelpRequest(Base):
    """SQLAlchemy model for help requests."""

    __tablename__ = "help_requests"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    contact = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)
    urgency_level = Column(String(20), default=UrgencyLevel.MEDIUM.value, nullable=False)
    status = Column(String(32), default=RequestStatus.OPEN.value, nullable=False)
    author_id = Column(String(255), ForeignKey("users.id"), nullable=False)
    author_name = Column(String(255), nullable=False)
    # Denormalized; refreshed inside every offer transaction
    helpers_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    # Moderation annotations
    category = Column(String(50), nullable=True)
    category_icon = Column(String(16), nullable=True)
    category_name = Column(String(100), nullable=True)
    detected_urgency = Column(String(20), nullable=True)
    estimated_time = Column(Integer, nullable=True)
    tags = Column(JSON, default=list)
    suggested_title = Column(String(500), nullable=True)
    safety_check = Column(String(20), nullable=True)
    safety_reason = Column(Text, nullable=True)

    offers = relationship("HelpOffer", back_populates="request")

    __table_args__ = (
        Index("idx_requests_location", "latitude", "longitude"),
        Index("idx_requests_status", "status"),
        Index("idx_requests_created", "created_at"),
    )

    def __repr__(self):
        return f"<HelpRequest(id='{self.id}', status='{self.status}')>"


class HelpOffer(Base):
    """SQLAlchemy model for help offers. One row per (request, helper)."""

    __tablename__ = "help_offers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    request_id = Column(String(36), ForeignKey("help_requests.id"), nullable=False)
    helper_id = Column(String(255), ForeignKey("users.id"), nullable=False)
    helper_name = Column(String(255), nullable=False)
    helper_email = Column(String(255), nullable=True)
    status = Column(String(20), default=OfferStatus.ACTIVE.value, nullable=False)
    offered_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    request = relationship("HelpRequest", back_populates="offers")

    __table_args__ = (
        UniqueConstraint("request_id", "helper_id", name="uq_offer_request_helper"),
    )

    def __repr__(self):
        return f"<HelpOffer(request_id='{self.request_id}', helper_id='{self.helper_id}')>"
