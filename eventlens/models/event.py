from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from eventlens.models.user import Base


class Event(Base):
    __tablename__ = "Event"
    EventID = Column(String(36), primary_key=True)
    UserID = Column(String(128), ForeignKey("Users.UserID"), nullable=False, index=True)
    Name = Column(String(255), nullable=False)
    Type = Column(String(64), nullable=True)
    # Instants are stored as naive UTC; TimeZone gives the local wall clock
    EventDate = Column(DateTime, nullable=False)
    EventStartTime = Column(String(5), nullable=False)
    EventEndTime = Column(String(5), nullable=False)
    EventEndDate = Column(DateTime, nullable=True)
    TimeZone = Column(String(64), nullable=False, default="UTC")
    # Branding
    BrandColor = Column(String(32), nullable=True)
    Typography = Column(String(64), nullable=True)
    FontStyle = Column(String(64), nullable=True)
    FontSize = Column(String(16), nullable=True)
    EventPictureUrl = Column(String(500), nullable=True)
    OverlayID = Column(String(36), nullable=True)
    OverlayUrl = Column(String(500), nullable=True)
    OverlayName = Column(String(255), nullable=True)
    # Plan snapshot; immutable outside the upgrade path
    # Not a foreign key: in-app purchases run on plans that have no PricingPlan row
    PlanID = Column(String(64), nullable=False)
    BasePlanName = Column(String(100), nullable=True)
    CustomPlan = Column(Text, nullable=False)
    FinalPrice = Column(Numeric(10, 2), nullable=False, default=0)
    OriginalPrice = Column(Numeric(10, 2), nullable=False, default=0)
    DiscountCode = Column(String(64), nullable=True)
    DiscountAmount = Column(Numeric(10, 2), nullable=True)
    DiscountType = Column(String(16), nullable=True)
    PaymentID = Column(String(255), ForeignKey("Payment.PaymentID"), nullable=True)
    PaymentProvider = Column(String(32), nullable=True)
    PaymentStatus = Column(String(32), nullable=True)
    RevenueCatTransactionID = Column(String(255), nullable=True, index=True)
    # Guest access
    ShareCode = Column(String(32), nullable=False, unique=True)
    QrCodeUrl = Column(String(500), nullable=True)
    Status = Column(String(16), nullable=False, default="active")
    ExpiredAt = Column(DateTime, nullable=True)
    # Quota counters, only changed under a row lock on this event
    GuestCount = Column(Integer, nullable=False, default=0)
    PhotoCount = Column(Integer, nullable=False, default=0)
    CreatedAt = Column(DateTime, server_default=func.now())
    LastUpdated = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Guest(Base):
    __tablename__ = "Guest"
    __table_args__ = (UniqueConstraint("EventID", "GuestID", name="UQ_Guest_Event_Guest"),)
    GuestRecordID = Column(Integer, primary_key=True, autoincrement=True)
    EventID = Column(String(36), ForeignKey("Event.EventID"), nullable=False)
    GuestID = Column(String(128), nullable=False, index=True)
    Name = Column(String(200), nullable=True)
    TermsAccepted = Column(Boolean, default=False)
    PhotosUploaded = Column(Integer, nullable=False, default=0)
    IsAnonymous = Column(Boolean, default=False)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Photo(Base):
    __tablename__ = "Photo"
    __table_args__ = (Index("IX_Photo_Event_Created", "EventID", "CreatedAt"),)
    PhotoID = Column(String(36), primary_key=True)
    EventID = Column(String(36), ForeignKey("Event.EventID"), nullable=False)
    GuestID = Column(String(128), nullable=False, index=True)
    GuestName = Column(String(200), nullable=True)
    PhotoUrl = Column(String(500), nullable=False)
    StorageKey = Column(String(500), nullable=False)
    ContentType = Column(String(100), nullable=True)
    SizeBytes = Column(Integer, nullable=True)
    Caption = Column(String(500), nullable=True)
    OverlayID = Column(String(36), nullable=True)
    IsAnonymous = Column(Boolean, default=False)
    LikeCount = Column(Integer, nullable=False, default=0)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())


class PhotoLike(Base):
    __tablename__ = "PhotoLike"
    PhotoID = Column(String(36), ForeignKey("Photo.PhotoID"), primary_key=True)
    GuestID = Column(String(128), primary_key=True)
    CreatedAt = Column(DateTime, server_default=func.now())
