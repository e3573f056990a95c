from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from eventlens.models.user import Base


class Payment(Base):
    """Local ledger entry for one charge, keyed by the provider's reference.

    Zero-cost orders use a synthesized ``free_...`` reference and never reach
    a provider. ``Status`` holds the normalized state; ``ProviderStatus`` keeps
    the provider's own vocabulary for debugging.
    """

    __tablename__ = "Payment"
    PaymentID = Column(String(255), primary_key=True)
    Provider = Column(String(32), nullable=False)  # stripe | paypal | revenuecat | free
    UserID = Column(String(128), nullable=False, index=True)
    PlanID = Column(String(64), nullable=False)
    CustomPlan = Column(Text, nullable=True)
    Currency = Column(String(8), nullable=False, default="usd")
    TotalAmount = Column(Numeric(10, 2), nullable=False)
    OriginalPrice = Column(Numeric(10, 2), nullable=False)
    DiscountCode = Column(String(64), nullable=True)
    DiscountAmount = Column(Numeric(10, 2), nullable=False, default=0)
    ProviderStatus = Column(String(64), nullable=True)
    Status = Column(String(16), nullable=False, default="pending")
    IsFreePlan = Column(Boolean, default=False)
    UserEmail = Column(String(255), nullable=True)
    ProviderCustomerID = Column(String(255), nullable=True)
    # PayPal refunds target the capture, not the order
    CaptureID = Column(String(255), nullable=True)
    RefundID = Column(String(255), nullable=True)
    RefundReason = Column(String(255), nullable=True)
    # Upgrades
    IsUpgrade = Column(Boolean, default=False)
    TargetEventID = Column(String(36), nullable=True)
    ExistingPrice = Column(Numeric(10, 2), nullable=True)
    NewPlanPrice = Column(Numeric(10, 2), nullable=True)
    UpgradeDelta = Column(Numeric(10, 2), nullable=True)
    # Set once the payment has been spent on an event create or upgrade
    ConsumedByEventID = Column(String(36), nullable=True)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())


class PaymentLog(Base):
    __tablename__ = "PaymentLog"
    LogID = Column(Integer, primary_key=True, autoincrement=True)
    PaymentID = Column(String(255), nullable=True, index=True)
    UserID = Column(String(128), nullable=True)
    Provider = Column(String(32), nullable=False)
    EventType = Column(String(64), nullable=False)
    Payload = Column(Text, nullable=True)
    ErrorMessage = Column(Text, nullable=True)
    CreatedAt = Column(DateTime, server_default=func.now())
