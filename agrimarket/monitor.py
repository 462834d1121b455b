import asyncio
import datetime
import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import crud, models, pricing
from .config import settings
from .database import SessionLocal
from .notifications import notify, notify_admin

logger = logging.getLogger("agrimarket")


def scheduled_start(booking: models.Booking) -> datetime.datetime:
    return datetime.datetime.combine(booking.date, booking.start_time or datetime.time(0, 0))


def check_arrival_delays(db: Session, now: Optional[datetime.datetime] = None) -> int:
    """
    Compensates farmers whose supplier is more than the grace period late.

    A booking is compensated once: the discount it receives is also what
    excludes it from later sweeps. Returns the number of bookings compensated.
    """
    now = now or datetime.datetime.now()
    grace = datetime.timedelta(minutes=settings.DELAY_GRACE_MINUTES)
    compensated = 0

    for booking in crud.get_unverified_confirmed_bookings(db):
        if now - scheduled_start(booking) <= grace:
            continue
        try:
            base = booking.final_price or booking.estimated_price or 0
            booking.discount_amount = pricing.round_half_up(base * settings.DELAY_COMPENSATION_RATE)
            notify(db, booking.farmer_id, "Supplier delay detected. Compensation applied.")
            notify_admin(db, f"Delay >{settings.DELAY_GRACE_MINUTES}m for booking {booking.id}.")
            db.commit()
            compensated += 1
            logger.info(f"Applied delay compensation of {booking.discount_amount} to booking {booking.id}.")
        except Exception as e:
            logger.error(f"Failed to apply delay compensation to booking {booking.id}: {e}")
            db.rollback()
            continue

    return compensated


def check_search_timeouts(db: Session, now: Optional[datetime.datetime] = None) -> int:
    """
    Tells the farmer and admin about broadcasts that nobody has picked up for hours.
    """
    now = now or datetime.datetime.utcnow()
    cutoff = now - datetime.timedelta(hours=settings.SEARCH_TIMEOUT_HOURS)
    notified = 0

    for booking in crud.get_stale_searching_bookings(db, cutoff):
        try:
            notify(db, booking.farmer_id,
                   f"Your {booking.item_category.value} booking at {booking.location} has been searching for over "
                   f"{settings.SEARCH_TIMEOUT_HOURS} hours. Suppliers are busy - please be patient.")
            notify_admin(db, f"Booking {booking.id} ({booking.item_category.value} at {booking.location}) has been "
                             f"searching for over {settings.SEARCH_TIMEOUT_HOURS} hours. "
                             f"Consider manually allotting to a trusted supplier.")
            booking.search_timeout_notified = True
            db.commit()
            notified += 1
        except Exception as e:
            logger.error(f"Failed to process search timeout for booking {booking.id}: {e}")
            db.rollback()
            continue

    return notified


def expire_unclaimed_bookings(db: Session, today: Optional[datetime.date] = None) -> int:
    """
    Marks broadcasts whose work date has passed as Expired.
    """
    today = today or datetime.date.today()
    expired = 0

    for booking in crud.get_searching_bookings_before(db, today):
        try:
            booking.status = models.BookingStatus.EXPIRED
            notify(db, booking.farmer_id,
                   f"Your {booking.item_category.value} request for {booking.date.isoformat()} expired "
                   f"without a supplier.")
            db.commit()
            expired += 1
        except Exception as e:
            logger.error(f"Failed to expire booking {booking.id}: {e}")
            db.rollback()
            continue

    return expired


def run_checks(db: Session):
    """One sweep. Each check runs even if an earlier one failed."""
    for check in (check_arrival_delays, check_search_timeouts, expire_unclaimed_bookings):
        try:
            check(db)
        except Exception as e:
            logger.error(f"Monitor check {check.__name__} failed: {e}")
            db.rollback()


async def run_booking_monitor():
    """
    Main background loop for the monitor.
    """
    while True:
        logger.info("Monitor waking up to check bookings...")
        db: Session = SessionLocal()
        try:
            # Blocking DB work stays off the event loop
            await asyncio.to_thread(run_checks, db)
        except Exception as e:
            logger.error(f"Error in booking monitor loop: {e}")
        finally:
            db.close()

        await asyncio.sleep(settings.MONITOR_INTERVAL_SECONDS)
