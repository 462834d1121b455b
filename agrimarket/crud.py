import datetime
import secrets
import string
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from . import models, schemas
from .config import settings
from .errors import BookingNotFound, ItemUnavailable, NotFound

BOOKING_ID_PREFIX = "AGB"
BOOKING_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_booking_id() -> str:
    """Returns an ID shaped like ``AGB-7KQ2M-X0PZL``."""
    part1 = "".join(secrets.choice(BOOKING_ID_ALPHABET) for _ in range(5))
    part2 = "".join(secrets.choice(BOOKING_ID_ALPHABET) for _ in range(5))
    return f"{BOOKING_ID_PREFIX}-{part1}-{part2}"


def new_booking_id(db: Session) -> str:
    """
    Generates a booking ID that is not already taken.
    The primary key still guards against a concurrent writer picking the same ID.
    """
    for _ in range(settings.BOOKING_ID_MAX_ATTEMPTS):
        booking_id = generate_booking_id()
        if db.get(models.Booking, booking_id) is None:
            return booking_id
    raise RuntimeError("Could not generate a unique booking ID.")


# --- Bookings ---

def create_bookings(db: Session, drafts: list[schemas.BookingCreate], farmer_id: str) -> list[models.Booking]:
    """
    Creates one booking per draft in a single transaction.
    A multi-item broadcast lands as several rows or none at all.
    """
    db_bookings = []
    try:
        for draft in drafts:
            if draft.item_id is not None and db.get(models.Item, draft.item_id) is None:
                raise ItemUnavailable(f"Item {draft.item_id} does not exist.")
            db_booking = models.Booking(
                id=new_booking_id(db),
                farmer_id=farmer_id,
                **draft.model_dump(),
            )
            db.add(db_booking)
            # Flush so the next generated ID sees this one
            db.flush()
            db_bookings.append(db_booking)
        db.commit()
    except Exception:
        db.rollback()
        raise

    for db_booking in db_bookings:
        db.refresh(db_booking)
    return db_bookings


def get_booking(db: Session, booking_id: str, for_update: bool = False) -> models.Booking:
    stmt = select(models.Booking).where(models.Booking.id == booking_id)
    if for_update:
        stmt = stmt.with_for_update()
    booking = db.execute(stmt).scalars().first()
    if booking is None:
        raise BookingNotFound(f"Booking {booking_id} not found.")
    return booking


def get_bookings(
        db: Session,
        farmer_id: Optional[str] = None,
        supplier_id: Optional[str] = None,
        status: Optional[models.BookingStatus] = None,
        item_category: Optional[models.ItemCategory] = None,
        location: Optional[str] = None,
        party_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
) -> list[models.Booking]:
    """
    Lists bookings matching every given filter.
    With ``party_id`` only bookings where that user is the farmer,
    supplier or operator are returned.
    """
    query = db.query(models.Booking)
    if party_id is not None:
        query = query.filter(or_(
            models.Booking.farmer_id == party_id,
            models.Booking.supplier_id == party_id,
            models.Booking.operator_id == party_id,
        ))
    if farmer_id is not None:
        query = query.filter(models.Booking.farmer_id == farmer_id)
    if supplier_id is not None:
        query = query.filter(models.Booking.supplier_id == supplier_id)
    if status is not None:
        query = query.filter(models.Booking.status == status)
    if item_category is not None:
        query = query.filter(models.Booking.item_category == item_category)
    if location is not None:
        query = query.filter(models.Booking.location == location)
    return query.order_by(models.Booking.created_at.desc()).offset(skip).limit(limit).all()


def count_searching_demand(db: Session, booking: models.Booking) -> int:
    """
    Counts the other open broadcasts for the same category at the same location.
    """
    return db.query(func.count(models.Booking.id)).filter(
        models.Booking.item_category == booking.item_category,
        models.Booking.location == booking.location,
        models.Booking.status == models.BookingStatus.SEARCHING,
        models.Booking.id != booking.id,
    ).scalar()


# --- Queries for the background monitor ---

def get_unverified_confirmed_bookings(db: Session) -> list[models.Booking]:
    """
    Confirmed bookings whose supplier has not yet started work and have not been compensated.
    """
    return db.query(models.Booking).filter(
        models.Booking.status == models.BookingStatus.CONFIRMED,
        models.Booking.otp_verified.is_(False),
        models.Booking.discount_amount.is_(None),
    ).all()


def get_stale_searching_bookings(db: Session, created_before: datetime.datetime) -> list[models.Booking]:
    return db.query(models.Booking).filter(
        models.Booking.status == models.BookingStatus.SEARCHING,
        models.Booking.search_timeout_notified.is_(False),
        models.Booking.created_at < created_before,
    ).all()


def get_searching_bookings_before(db: Session, day: datetime.date) -> list[models.Booking]:
    return db.query(models.Booking).filter(
        models.Booking.status == models.BookingStatus.SEARCHING,
        models.Booking.date < day,
    ).all()


# --- Items ---

def get_item(db: Session, item_id: int, for_update: bool = False) -> Optional[models.Item]:
    stmt = select(models.Item).where(models.Item.id == item_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalars().first()


def count_held_units(db: Session, item_id: int) -> int:
    """
    Units of an item reserved by bookings that have not released them yet.
    A driver bound as operator holds one unit of the driver item.
    """
    holding = models.Booking.status.in_(models.HOLDING_STATUSES)
    as_item = db.query(models.Booking).filter(holding, models.Booking.item_id == item_id).all()
    as_driver = db.query(func.count(models.Booking.id)).filter(
        holding, models.Booking.operator_item_id == item_id,
    ).scalar()
    return sum(booking.quantity or 1 for booking in as_item) + as_driver


def upsert_item(db: Session, item: schemas.ItemUpsert) -> models.Item:
    """
    Inserts or refreshes the local copy of a catalog item.

    The catalog reports the owner's total stock. Units held by open
    bookings here are subtracted, so a resync never hands back units that
    a later cancellation will release again.
    Note: Does NOT commit.
    """
    data = item.model_dump()
    held = count_held_units(db, item.id)
    if item.quantity_available is not None:
        data["quantity_available"] = max(item.quantity_available - held, 0)
        data["available"] = item.available and data["quantity_available"] > 0
    else:
        data["available"] = item.available and held == 0

    db_item = db.get(models.Item, item.id, with_for_update=True)
    if db_item is None:
        db_item = models.Item(**data)
        db.add(db_item)
    else:
        for field, value in data.items():
            setattr(db_item, field, value)
    return db_item


# --- Damage reports ---

def create_damage_report(db: Session, report: schemas.DamageReportCreate, reporter_id: str) -> models.DamageReport:
    """
    Note: Does NOT commit.
    """
    db_report = models.DamageReport(
        booking_id=report.booking_id,
        item_id=report.item_id,
        reporter_id=reporter_id,
        description=report.description,
        status=models.DamageReportStatus.PENDING,
    )
    db.add(db_report)
    return db_report


def get_damage_report(db: Session, report_id: int) -> models.DamageReport:
    report = db.get(models.DamageReport, report_id)
    if report is None:
        raise NotFound(f"Damage report {report_id} not found.")
    return report


def get_damage_reports(
        db: Session,
        booking_id: Optional[str] = None,
        status: Optional[models.DamageReportStatus] = None,
        skip: int = 0,
        limit: int = 100,
) -> list[models.DamageReport]:
    query = db.query(models.DamageReport)
    if booking_id is not None:
        query = query.filter(models.DamageReport.booking_id == booking_id)
    if status is not None:
        query = query.filter(models.DamageReport.status == status)
    return query.order_by(models.DamageReport.id).offset(skip).limit(limit).all()


# --- Sliding-window events ---

def add_window_event(db: Session, kind: str, subject: str, at: datetime.datetime):
    """
    Note: Does NOT commit. The event becomes durable with the caller's transaction.
    """
    db.add(models.WindowEvent(kind=kind, subject=subject, created_at=at))
    db.flush()


def count_window_events(db: Session, kind: str, subject: str, since: datetime.datetime) -> int:
    return db.query(func.count(models.WindowEvent.id)).filter(
        models.WindowEvent.kind == kind,
        models.WindowEvent.subject == subject,
        models.WindowEvent.created_at >= since,
    ).scalar()
