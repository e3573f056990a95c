from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from eventlens.models.user import Base


class AppErrorLog(Base):
    __tablename__ = "AppErrorLog"
    ErrorID = Column(Integer, primary_key=True, autoincrement=True)
    OccurredAt = Column(DateTime, server_default=func.now())
    RequestID = Column(String(64), nullable=True)
    Path = Column(String(500), nullable=True)
    Method = Column(String(16), nullable=True)
    StatusCode = Column(Integer, nullable=True)
    ErrorCode = Column(String(64), nullable=True)
    UserID = Column(String(128), nullable=True)
    ClientIP = Column(String(45), nullable=True)
    UserAgent = Column(String(255), nullable=True)
    Message = Column(Text, nullable=True)
    StackTrace = Column(Text, nullable=True)


class AuditLog(Base):
    __tablename__ = "AuditLog"
    AuditID = Column(Integer, primary_key=True, autoincrement=True)
    Type = Column(String(32), nullable=False)
    Action = Column(String(255), nullable=False)
    Status = Column(String(16), nullable=False)
    UserID = Column(String(128), nullable=True, index=True)
    UserEmail = Column(String(255), nullable=True)
    EventID = Column(String(36), nullable=True, index=True)
    EventName = Column(String(255), nullable=True)
    Details = Column(Text, nullable=True)
    CreatedAt = Column(DateTime, server_default=func.now())
