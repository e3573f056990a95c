from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from eventlens.models.user import Base


class PricingPlan(Base):
    __tablename__ = "PricingPlan"
    PlanID = Column(String(64), primary_key=True)
    Name = Column(String(100), nullable=False)
    Description = Column(String(255), nullable=True)
    BasePrice = Column(Numeric(10, 2), nullable=False, default=0)
    GuestLimit = Column(Integer, nullable=False, default=0)
    PhotoPool = Column(Integer, nullable=False, default=0)
    PhotosPerGuest = Column(Integer, nullable=True)
    GuestOveragePrice = Column(Numeric(10, 4), nullable=False, default=0)
    PhotoOveragePrice = Column(Numeric(10, 4), nullable=False, default=0)
    # JSON text: [{"days": 30, "price": 0}, {"days": 90, "price": 9.99}]
    StorageOptions = Column(Text, nullable=True)
    DefaultStorageDays = Column(Integer, nullable=True)
    # Store product id for in-app purchases of this plan
    RevenueCatProductID = Column(String(128), nullable=True)
    IsActive = Column(Boolean, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())
