from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class User(Base):
    """Local mirror of an identity-provider subject.

    Rows are created on first sight of a verified identity so owner and
    uploader names can be resolved without calling the provider.
    """

    __tablename__ = "Users"
    UserID = Column(String(128), primary_key=True)
    Email = Column(String(255), nullable=True)
    FullName = Column(String(200), nullable=True)
    IsAnonymous = Column(Boolean, default=False)
    IsAdmin = Column(Boolean, default=False)
    DateCreated = Column(DateTime, server_default=func.now())
    LastUpdated = Column(DateTime, server_default=func.now(), onupdate=func.now())
