from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.sql import func

from eventlens.models.user import Base


class Overlay(Base):
    """Branding image laid over guest photos.

    Rows without an owner belong to the admin library; user uploads carry the
    uploading user's id.
    """

    __tablename__ = "Overlay"
    OverlayID = Column(String(36), primary_key=True)
    OwnerUserID = Column(String(128), ForeignKey("Users.UserID"), nullable=True, index=True)
    Name = Column(String(255), nullable=False)
    Url = Column(String(500), nullable=False)
    StorageKey = Column(String(500), nullable=True)
    IsActive = Column(Boolean, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())
