import datetime
import math
from typing import NamedTuple, Optional

from . import models
from .errors import PurposeNotSupported

DEFAULT_DURATION_HOURS = 3.0
MIN_DURATION_HOURS = 1.0

HARVEST_MONTHS = {9, 10, 11}
SOWING_MONTHS = {3, 4, 5}


class Quote(NamedTuple):
    final_price: int
    duration: float
    surge_multiplier: float


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def duration_hours(booking: models.Booking) -> float:
    """
    Billable hours for a booking: the estimated duration when given, otherwise
    the start/end window, otherwise a 3 hour default. Never less than 1 hour.
    """
    hours = None
    if booking.estimated_duration:
        hours = booking.estimated_duration
    elif booking.start_time is not None and booking.end_time is not None:
        start = datetime.datetime.combine(datetime.date.min, booking.start_time)
        end = datetime.datetime.combine(datetime.date.min, booking.end_time)
        span = (end - start).total_seconds() / 3600
        if span > 0:
            hours = span
    if hours is None:
        hours = DEFAULT_DURATION_HOURS
    return max(MIN_DURATION_HOURS, hours)


def surge_multiplier(booking_date: Optional[datetime.date], demand: int) -> float:
    """
    Seasonal and demand-driven price factor. Rules combine by taking the
    maximum, so the result never drops below 1.0 and never decreases as
    demand grows.
    """
    month = (booking_date or datetime.date.today()).month
    multiplier = 1.0
    if month in HARVEST_MONTHS:
        multiplier = 1.25
    if month in SOWING_MONTHS:
        multiplier = max(multiplier, 1.15)
    if demand > 10:
        multiplier = max(multiplier, 1.4)
    elif demand > 5:
        multiplier = max(multiplier, 1.25)
    return multiplier


def find_purpose_price(item: models.Item, purpose: str) -> int:
    for entry in item.purposes or []:
        if entry.get("name") == purpose:
            return entry.get("price", 0)
    raise PurposeNotSupported(
        f"{item.name} does not support the work purpose '{purpose}'."
    )


def compute_price(
        booking: models.Booking,
        item: models.Item,
        quantity: int = 1,
        demand: int = 0,
        include_operator: bool = True,
) -> Quote:
    """
    Prices ``quantity`` units of ``item`` for the booking's purpose.

    The operator charge is added once per hour, however many units are
    booked, and only when the booking asked for an operator.
    """
    purpose_price = find_purpose_price(item, booking.work_purpose)
    duration = duration_hours(booking)
    multiplier = surge_multiplier(booking.date, demand)

    subtotal = purpose_price * quantity * duration
    if include_operator and booking.operator_required and item.operator_charge:
        subtotal += item.operator_charge * duration

    return Quote(round_half_up(subtotal * multiplier), duration, multiplier)


def driver_hourly_rate(driver: models.Item) -> int:
    """Drivers list a single rate; the first purpose's price is used."""
    purposes = driver.purposes or []
    if not purposes:
        return 0
    return purposes[0].get("price", 0)
