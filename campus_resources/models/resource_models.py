from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


ACTIVE_RESERVATION_FILTER = "\"State\" IN ('pending', 'approved')"


class Tool(Base):
    __tablename__ = "Tools"
    __table_args__ = (
        CheckConstraint('"StockTotal" >= 0', name="CK_Tools_StockTotal"),
        CheckConstraint('"StockAvailable" >= 0 AND "StockAvailable" <= "StockTotal"', name="CK_Tools_StockAvailable"),
    )

    ToolID = Column(Integer, primary_key=True)
    ToolName = Column(String(255), nullable=False)
    Category = Column(String(100), nullable=False)
    Description = Column(String(1000), default="")
    StockTotal = Column(Integer, nullable=False, default=0)
    StockAvailable = Column(Integer, nullable=False, default=0)
    Location = Column(String(255), default="")
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Loans = relationship("Loan", back_populates="Tool", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": Version}


class Loan(Base):
    __tablename__ = "Loans"
    __table_args__ = (
        CheckConstraint('"Quantity" >= 1', name="CK_Loans_Quantity"),
        Index("IX_Loans_Tool_State", "ToolID", "State"),
        Index("IX_Loans_User", "UserID"),
    )

    LoanID = Column(Integer, primary_key=True)
    UserID = Column(Integer, nullable=False)
    ToolID = Column(Integer, ForeignKey("Tools.ToolID"), nullable=False)
    Quantity = Column(Integer, nullable=False)
    State = Column(String(20), nullable=False, default="pending")
    RequestedAt = Column(DateTime, nullable=False)
    FulfilledAt = Column(DateTime)
    DueAt = Column(DateTime, nullable=False)
    ReturnedAt = Column(DateTime)
    RejectionReason = Column(String(500))
    Observations = Column(String(1000), default="")
    Version = Column(Integer, nullable=False)
    UpdatedDate = Column(DateTime, server_default=func.now())

    Tool = relationship("Tool", back_populates="Loans")

    __mapper_args__ = {"version_id_col": Version}


class Room(Base):
    __tablename__ = "Rooms"

    RoomID = Column(Integer, primary_key=True)
    RoomName = Column(String(100), nullable=False, unique=True)
    Description = Column(String(500), default="")
    Capacity = Column(Integer, nullable=False)
    Location = Column(String(255), default="")
    IsActive = Column(Boolean, default=True, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())

    Reservations = relationship("Reservation", back_populates="Room")


class Reservation(Base):
    __tablename__ = "Reservations"
    __table_args__ = (
        CheckConstraint('"StartTime" < "EndTime"', name="CK_Reservations_Interval"),
        Index("IX_Reservations_Room_Date", "RoomID", "ReservationDate"),
        Index(
            "UX_Reservations_ActiveStart",
            "RoomID",
            "ReservationDate",
            "StartTime",
            unique=True,
            sqlite_where=text(ACTIVE_RESERVATION_FILTER),
            postgresql_where=text(ACTIVE_RESERVATION_FILTER),
        ),
    )

    ReservationID = Column(Integer, primary_key=True)
    RoomID = Column(Integer, ForeignKey("Rooms.RoomID"), nullable=False)
    UserID = Column(Integer, nullable=False)
    ReservationDate = Column(Date, nullable=False)
    # "HH:MM", zero padded so string order is time order
    StartTime = Column(String(5), nullable=False)
    EndTime = Column(String(5), nullable=False)
    State = Column(String(20), nullable=False, default="pending")
    Reason = Column(String(200), nullable=False)
    GroupName = Column(String(50))
    Subject = Column(String(100))
    AdminComment = Column(String(500), default="")
    ApprovedAt = Column(DateTime)
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Room = relationship("Room", back_populates="Reservations")

    __mapper_args__ = {"version_id_col": Version}


class RoomDaySlot(Base):
    """Per (room, date) guard row; every reservation insert bumps it."""

    __tablename__ = "RoomDaySlots"
    __table_args__ = (UniqueConstraint("RoomID", "SlotDate", name="UQ_RoomDaySlots_Room_Date"),)

    SlotID = Column(Integer, primary_key=True)
    RoomID = Column(Integer, ForeignKey("Rooms.RoomID"), nullable=False)
    SlotDate = Column(Date, nullable=False)
    Revision = Column(Integer, nullable=False, default=0)
    Version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": Version}


class Report(Base):
    __tablename__ = "Reports"

    ReportID = Column(Integer, primary_key=True)
    UserID = Column(Integer, nullable=False)
    MachineNumber = Column(String(50), nullable=False)
    Title = Column(String(100), nullable=False)
    Description = Column(String(500), nullable=False)
    Priority = Column(String(10), nullable=False, default="medium")
    Category = Column(String(20), nullable=False, default="other")
    State = Column(String(20), nullable=False, default="pending")
    TechnicianComment = Column(String(300), default="")
    ResolvedAt = Column(DateTime)
    CreatedDate = Column(DateTime, nullable=False)
    UpdatedDate = Column(DateTime)


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    UserID = Column(Integer, nullable=False)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
