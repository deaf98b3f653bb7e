from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


RESERVATION_STATUSES = ("Requested", "Approved", "Rejected", "Cancelled")
ACTIVE_RESERVATION_STATUSES = ("Requested", "Approved")
MAINTENANCE_STATUSES = ("Ready", "UnderRepair")
USAGE_CONDITIONS = ("New", "Used")
USER_ROLES = ("Student", "Faculty", "Admin")


class EquipmentType(Base):
    __tablename__ = "EquipmentTypes"

    TypeID = Column(Integer, primary_key=True)
    TypeName = Column(String(100), nullable=False, unique=True)
    CreatedDate = Column(DateTime, server_default=func.now())

    Models = relationship("EquipmentModel", back_populates="Type")


class EquipmentModel(Base):
    __tablename__ = "EquipmentModels"
    __table_args__ = (UniqueConstraint("TypeID", "ModelName", name="uq_equipment_models_type_name"),)

    ModelID = Column(Integer, primary_key=True)
    TypeID = Column(Integer, ForeignKey("EquipmentTypes.TypeID"), nullable=False)
    ModelName = Column(String(255), nullable=False)
    PhotoRef = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Type = relationship("EquipmentType", back_populates="Models")
    Units = relationship("EquipmentUnit", back_populates="Model")


class Room(Base):
    __tablename__ = "Rooms"

    RoomID = Column(Integer, primary_key=True)
    RoomNumber = Column(String(50), nullable=False, unique=True)
    Description = Column(String(255))

    Antennas = relationship("Antenna", back_populates="Room")


class Antenna(Base):
    __tablename__ = "Antennas"

    ReaderID = Column(String(50), primary_key=True)
    RoomID = Column(Integer, ForeignKey("Rooms.RoomID"), nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())

    Room = relationship("Room", back_populates="Antennas")


class EquipmentUnit(Base):
    __tablename__ = "EquipmentUnits"

    SerialID = Column(String(100), primary_key=True)
    ModelID = Column(Integer, ForeignKey("EquipmentModels.ModelID"), nullable=False, index=True)
    TypeID = Column(Integer, ForeignKey("EquipmentTypes.TypeID"), nullable=False)
    MaintenanceStatus = Column(String(20), nullable=False, default="Ready")
    UsageCondition = Column(String(20), nullable=False, default="New")
    PurchaseCost = Column(Numeric(10, 2))
    PurchaseDate = Column(Date)
    CurrentRoomReaderID = Column(String(50), ForeignKey("Antennas.ReaderID"))
    TagID = Column(String(4), unique=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Model = relationship("EquipmentModel", back_populates="Units")
    CurrentAntenna = relationship("Antenna")
    Homes = relationship("EquipmentHome", back_populates="Unit", cascade="all, delete-orphan")


class EquipmentHome(Base):
    __tablename__ = "EquipmentHomes"

    SerialID = Column(String(100), ForeignKey("EquipmentUnits.SerialID"), primary_key=True)
    RoomID = Column(Integer, ForeignKey("Rooms.RoomID"), primary_key=True)

    Unit = relationship("EquipmentUnit", back_populates="Homes")
    Room = relationship("Room")


class CheckoutUser(Base):
    __tablename__ = "CheckoutUsers"

    SchoolID = Column(String(20), primary_key=True)
    FirstName = Column(String(100), nullable=False)
    MiddleName = Column(String(100))
    LastName = Column(String(100), nullable=False)
    EmailAddress = Column(String(255))
    UserRole = Column(String(20), nullable=False, default="Student")
    TagID = Column(String(4), unique=True)
    CreatedDate = Column(DateTime, server_default=func.now())


class Reservation(Base):
    __tablename__ = "Reservations"
    __table_args__ = (
        Index("ix_reservations_status_dates", "Status", "StartDate", "EndDate"),
        Index("ix_reservations_requester", "RequesterID", "Status"),
    )

    ReservationID = Column(Integer, primary_key=True)
    RequesterID = Column(String(20), ForeignKey("CheckoutUsers.SchoolID"), nullable=False)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    Status = Column(String(20), nullable=False, default="Requested")
    Responder = Column(String(255))
    ClosedReason = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Lines = relationship("ReservationLine", back_populates="Reservation", cascade="all, delete-orphan")
    Requester = relationship("CheckoutUser")


class ReservationLine(Base):
    __tablename__ = "ReservationLines"

    ReservationLineID = Column(Integer, primary_key=True)
    ReservationID = Column(Integer, ForeignKey("Reservations.ReservationID", ondelete="CASCADE"), nullable=False, index=True)
    ModelID = Column(Integer, ForeignKey("EquipmentModels.ModelID"), nullable=False, index=True)
    TypeID = Column(Integer, ForeignKey("EquipmentTypes.TypeID"), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)

    Reservation = relationship("Reservation", back_populates="Lines")
    Model = relationship("EquipmentModel")


class ScanEvent(Base):
    __tablename__ = "ScanEvents"
    __table_args__ = (Index("ix_scan_events_tag_id", "EquipmentTagID", "ScanEventID"),)

    ScanEventID = Column(Integer, primary_key=True)
    EquipmentTagID = Column(String(4), nullable=False)
    UserTagID = Column(String(4))
    ReaderID = Column(String(50), ForeignKey("Antennas.ReaderID"), nullable=False)
    ScanTime = Column(DateTime, nullable=False)
    IsWalkIn = Column(Boolean, nullable=False)
    CreatedAt = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(String(100), nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(String(20))
    CreatedAt = Column(DateTime, server_default=func.now())
