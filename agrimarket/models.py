import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text, Time,
)
from sqlalchemy import Enum as SQLEnum

from .database import Base


class BookingStatus(str, PyEnum):
    SEARCHING = "Searching"
    PENDING_CONFIRMATION = "Pending Confirmation"
    AWAITING_OPERATOR = "Awaiting Operator"
    CONFIRMED = "Confirmed"
    ARRIVED = "Arrived"
    IN_PROCESS = "In Process"
    PENDING_PAYMENT = "Pending Payment"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


TERMINAL_STATUSES = {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.EXPIRED}
ACCEPTABLE_STATUSES = {
    BookingStatus.SEARCHING,
    BookingStatus.AWAITING_OPERATOR,
    BookingStatus.PENDING_CONFIRMATION,
}

# Statuses in which the bound item (and driver) units are reserved
HOLDING_STATUSES = {
    BookingStatus.AWAITING_OPERATOR,
    BookingStatus.CONFIRMED,
    BookingStatus.ARRIVED,
    BookingStatus.IN_PROCESS,
    BookingStatus.PENDING_PAYMENT,
}
# Open to claims by any supplier or driver, so visible to all of them
OPEN_STATUSES = {BookingStatus.SEARCHING, BookingStatus.AWAITING_OPERATOR}


class ItemCategory(str, PyEnum):
    TRACTORS = "Tractors"
    HARVESTERS = "Harvesters"
    JCB = "JCB"
    WORKERS = "Workers"
    DRONES = "Drones"
    SPRAYERS = "Sprayers"
    DRIVERS = "Drivers"
    BOREWELL = "Borewell"


# Machines that may need a separate operator (driver) to run them
MACHINE_CATEGORIES = {
    ItemCategory.TRACTORS,
    ItemCategory.HARVESTERS,
    ItemCategory.JCB,
    ItemCategory.BOREWELL,
}


class PaymentMethod(str, PyEnum):
    CASH = "Cash"
    ONLINE = "Online"


class DamageReportStatus(str, PyEnum):
    PENDING = "pending"
    RESOLVED = "resolved"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(32), primary_key=True)

    # IDs from the identity and catalog services.
    # No direct DB relationship is enforced for users.
    farmer_id = Column(String(128), index=True, nullable=False)
    supplier_id = Column(String(128), index=True, nullable=True)
    operator_id = Column(String(128), nullable=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=True)
    operator_item_id = Column(Integer, ForeignKey("items.id"), nullable=True)

    item_category = Column(SQLEnum(ItemCategory), index=True, nullable=False)
    work_purpose = Column(String(128), nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    estimated_duration = Column(Float, nullable=True)
    location = Column(String(255), index=True, nullable=False)
    quantity = Column(Integer, nullable=True)
    operator_required = Column(Boolean, default=False, nullable=False)
    allow_multiple_suppliers = Column(Boolean, default=False, nullable=False)
    additional_instructions = Column(Text, nullable=True)

    status = Column(SQLEnum(BookingStatus), index=True, nullable=False, default=BookingStatus.SEARCHING)

    # --- Money ---
    estimated_price = Column(Integer, nullable=True)
    advance_amount = Column(Integer, nullable=True)
    advance_payment_id = Column(String(64), nullable=True)
    final_price = Column(Integer, nullable=True)
    discount_amount = Column(Integer, nullable=True)
    final_payment_id = Column(String(64), nullable=True)
    payment_method = Column(SQLEnum(PaymentMethod), nullable=True)
    payment_details = Column(JSON, nullable=True)

    # --- Lifecycle metadata ---
    otp_code = Column(String(6), nullable=True)
    otp_verified = Column(Boolean, default=False, nullable=False)
    work_start_time = Column(DateTime, nullable=True)
    dispute_raised = Column(Boolean, default=False, nullable=False)
    dispute_resolved = Column(Boolean, default=False, nullable=False)
    damage_reported = Column(Boolean, default=False, nullable=False)
    is_rebroadcast = Column(Boolean, default=False, nullable=False)
    search_timeout_notified = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.datetime.utcnow, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_bookings_demand", "item_category", "location", "status"),
    )


class Item(Base):
    """Local mirror of a catalog item; only availability is written here."""

    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    category = Column(SQLEnum(ItemCategory), index=True, nullable=False)
    owner_id = Column(String(128), index=True, nullable=False)
    location = Column(String(255), nullable=False, default="")
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # List of {"name": <purpose>, "price": <int>}
    purposes = Column(JSON, nullable=False, default=list)
    operator_charge = Column(Integer, nullable=True)

    available = Column(Boolean, default=True, nullable=False)
    # None means the item is a single unit rather than a fleet
    quantity_available = Column(Integer, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class DamageReport(Base):
    __tablename__ = "damage_reports"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(32), ForeignKey("bookings.id"), index=True, nullable=False)
    item_id = Column(Integer, nullable=True)
    reporter_id = Column(String(128), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(SQLEnum(DamageReportStatus), default=DamageReportStatus.PENDING, nullable=False)
    timestamp = Column(DateTime, default=datetime.datetime.utcnow, nullable=False)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    # Status to track if the event has been sent
    status = Column(String(20), default="PENDING", nullable=False)

    topic = Column(String(255), nullable=False)
    payload = Column(Text, nullable=False)

    created_at = Column(DateTime, default=datetime.datetime.utcnow)

    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )


class WindowEvent(Base):
    """One occurrence counted by a sliding-window signal (rejections, payments)."""

    __tablename__ = "window_events"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(64), nullable=False)
    subject = Column(String(128), nullable=False)
    created_at = Column(DateTime, default=datetime.datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('ix_window_events_lookup', 'kind', 'subject', 'created_at'),
    )
