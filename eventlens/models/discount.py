from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from eventlens.models.user import Base


class DiscountCode(Base):
    __tablename__ = "DiscountCode"
    DiscountCodeID = Column(Integer, primary_key=True, autoincrement=True)
    # Always stored upper-case
    Code = Column(String(64), nullable=False, unique=True)
    DiscountType = Column(String(16), nullable=False)  # 'percentage' | 'fixed'
    DiscountValue = Column(Numeric(10, 2), nullable=False)
    StartDate = Column(DateTime, nullable=False)
    ExpireDate = Column(DateTime, nullable=False)
    IsActive = Column(Boolean, default=True)
    CurrentUses = Column(Integer, nullable=False, default=0)
    TotalDiscountGiven = Column(Numeric(12, 2), nullable=False, default=0)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())


class DiscountCodeUsage(Base):
    __tablename__ = "DiscountCodeUsage"
    # One redemption per (code, event); retried requests hit this constraint
    __table_args__ = (
        UniqueConstraint("DiscountCodeID", "EventID", name="UQ_DiscountCodeUsage_Code_Event"),
    )
    UsageID = Column(Integer, primary_key=True, autoincrement=True)
    DiscountCodeID = Column(Integer, ForeignKey("DiscountCode.DiscountCodeID"), nullable=False)
    Code = Column(String(64), nullable=False)
    EventID = Column(String(36), nullable=False)
    UserID = Column(String(128), nullable=False)
    OrderAmount = Column(Numeric(10, 2), nullable=False)
    DiscountAmount = Column(Numeric(10, 2), nullable=False)
    UsedAt = Column(DateTime, server_default=func.now())
