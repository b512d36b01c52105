import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from laptop_ledger.db.base import Base


def new_document_id() -> str:
    return uuid.uuid4().hex


class Item(Base):
    __tablename__ = "Items"

    ItemID = Column(String(32), primary_key=True, default=new_document_id)
    DisplayName = Column(String(255))
    Brand = Column(String(100))
    Model = Column(String(100))
    SerialNumber = Column(String(255), index=True)
    ScanCode = Column(String(255), index=True)
    Status = Column(String(20), nullable=False, default="available")
    CurrentHolder = Column(String(255))
    Location = Column(String(255))
    LastLoanAt = Column(DateTime)
    LastReturnAt = Column(DateTime)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Aliases = relationship("ItemAlias", back_populates="Item", cascade="all, delete-orphan")


class ItemAlias(Base):
    __tablename__ = "ItemAliases"

    AliasID = Column(Integer, primary_key=True)
    ItemID = Column(String(32), ForeignKey("Items.ItemID"), nullable=False)
    Alias = Column(String(255), nullable=False)
    CreatedAt = Column(DateTime, server_default=func.now())

    Item = relationship("Item", back_populates="Aliases")


class LoanEvent(Base):
    __tablename__ = "LoanEvents"

    LoanEventID = Column(String(32), primary_key=True, default=new_document_id)
    ItemRef = Column(String(255), nullable=False)
    ItemDisplayName = Column(String(255))
    BorrowerKey = Column(String(255), nullable=False)
    Destination = Column(String(255), nullable=False)
    Classroom = Column(String(100))
    Purpose = Column(String(500), nullable=False)
    LoanedBy = Column(String(255))
    LoanedAt = Column(DateTime, nullable=False)
    ExpectedReturnAt = Column(DateTime)
    ReturnedAt = Column(DateTime)
    ReturnedBy = Column(String(255))
    ReceivedBy = Column(String(255))
    Status = Column(String(20), nullable=False, default="active")
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


Index("IX_LoanEvents_Status_ItemRef", LoanEvent.Status, LoanEvent.ItemRef)
Index("IX_LoanEvents_BorrowerKey", LoanEvent.BorrowerKey)


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(String(255), nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(String(255))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
