"""
ParkIt - Data Models
Persistent records for slot reservations: users and their vehicles, the
physical parking slots, the reservation ledger and the payments raised at
checkout.

Every reservation is kept for audit. Cancellation is a status, never a delete.
"""

from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Boolean, Column, DateTime, Enum as SqlEnum, ForeignKey, Integer,
    Numeric, String, UniqueConstraint, create_engine, Index
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value):
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso(value):
    return value.isoformat() if value is not None else None


# Custom Enumerations


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses that hold a slot for their whole window
BLOCKING_STATUSES = (ReservationStatus.CONFIRMED, ReservationStatus.ACTIVE)


# Core Data Models


class User(Base):
    """
    A customer account. Owns reservations and registered vehicles.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False)
    phone = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<User('{self.email}')>"


class Vehicle(Base):
    """
    A vehicle registered by a user. Plate numbers are unique across the lot.
    """
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    plate_number = Column(String, unique=True, nullable=False)
    model = Column(String, nullable=False)
    color = Column(String)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plate_number": self.plate_number,
            "model": self.model,
            "color": self.color,
        }

    def __repr__(self):
        return f"<Vehicle('{self.plate_number}')>"


class Slot(Base):
    """
    A physical parking space.
    The occupancy flag tracks who is parked right now, independent of
    future bookings held in the reservation ledger.
    """
    __tablename__ = "parking_slots"

    id = Column(Integer, primary_key=True)
    slot_number = Column(String, unique=True, nullable=False)
    level = Column(String, nullable=False)
    is_occupied = Column(Boolean, default=False, nullable=False)
    occupant_reservation_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "slot_number": self.slot_number,
            "level": self.level,
            "is_occupied": self.is_occupied,
            "occupant_reservation_id": self.occupant_reservation_id,
        }

    def __repr__(self):
        return f"<Slot('{self.slot_number}')>"


class Reservation(Base):
    """
    A time-bounded claim on a slot by a user and vehicle.
    Tracks the requested window, the actual entry and exit, and the status.
    """
    __tablename__ = "reservations"
    __table_args__ = (
        Index("ix_reservations_slot_window", "slot_id", "start_time", "end_time"),
        Index("ix_reservations_plate", "vehicle_plate"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    slot_id = Column(Integer, ForeignKey("parking_slots.id"), nullable=False)

    # Copied at booking time so the audit trail survives vehicle edits
    vehicle_plate = Column(String, nullable=False)

    # Requested window, half-open [start_time, end_time)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    planned_minutes = Column(Integer, nullable=False)

    # Actual occupancy
    actual_entry_time = Column(DateTime, nullable=True)
    actual_exit_time = Column(DateTime, nullable=True)

    status = Column(SqlEnum(ReservationStatus), default=ReservationStatus.CONFIRMED, nullable=False)
    cancelled_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def planned_duration(self):
        return self.end_time - self.start_time

    def overlaps(self, start_time, end_time):
        """Half-open overlap test against another window."""
        return self.start_time < end_time and start_time < self.end_time

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "slot_id": self.slot_id,
            "vehicle_plate": self.vehicle_plate,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "planned_minutes": self.planned_minutes,
            "actual_entry_time": _iso(self.actual_entry_time),
            "actual_exit_time": _iso(self.actual_exit_time),
            "status": self.status.value,
            "cancelled_by": self.cancelled_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Reservation(id={self.id}, slot_id={self.slot_id}, status={self.status.value})>"


class Payment(Base):
    """
    The charge raised for one completed checkout. Immutable once written.
    """
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("reservation_id", name="uq_payment_reservation"),
    )

    id = Column(Integer, primary_key=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    duration_hours = Column(Integer, nullable=False)
    status = Column(SqlEnum(PaymentStatus), default=PaymentStatus.COMPLETED, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "reservation_id": self.reservation_id,
            "user_id": self.user_id,
            "amount": str(self.amount),
            "duration_hours": self.duration_hours,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Payment(reservation_id={self.reservation_id}, amount={self.amount})>"


# Database Initialization Helpers


def make_engine(database_url):
    """
    Build an engine for the configured database.
    SQLite connections are shared across request threads.
    """
    options = {"future": True, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # Writers from other processes wait for the database lock this long
        options["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise each thread sees an empty database
            options["poolclass"] = StaticPool
    return create_engine(database_url, **options)


def make_session_factory(engine):
    # Rows leave the session detached; keep their loaded state readable
    return sessionmaker(bind=engine, future=True, expire_on_commit=False)


def create_db(engine) -> None:
    """
    Initialize the database by creating all tables.
    """
    Base.metadata.create_all(engine)
