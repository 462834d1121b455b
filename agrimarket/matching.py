"""
Acceptance state machine.

A supplier (or driver) claims an open booking with one of their items.
Every successful claim binds supplier, item, quantity and price, reserves
inventory on the item and, for partial fulfillment, splits the booking.
All of it is written in one transaction: either the whole claim commits
or nothing changes.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import crud, models, pricing
from .errors import BookingNotFound, InsufficientQuantity, ItemUnavailable, JobUnavailable
from .models import BookingStatus
from .notifications import notify

logger = logging.getLogger("agrimarket")

# Columns that identify a row rather than describe the request
_SPLIT_SKIP_COLUMNS = {"id", "version", "created_at"}


@dataclass
class Acceptance:
    confirmed: models.Booking
    # The still-open remainder of a partially fulfilled booking
    remaining: Optional[models.Booking] = None


# --- Inventory ---

def reserve_item(item: models.Item, quantity: int):
    """
    Takes ``quantity`` units out of an item's availability.
    An item without a tracked quantity is a single unit.
    """
    if item.quantity_available is not None:
        if item.quantity_available < quantity:
            raise InsufficientQuantity(
                f"{item.name} has {item.quantity_available} available, {quantity} requested."
            )
        item.quantity_available -= quantity
        if item.quantity_available <= 0:
            item.available = False
    else:
        if quantity > 1:
            raise InsufficientQuantity(f"{item.name} is a single unit, {quantity} requested.")
        item.available = False


def release_item(item: models.Item, quantity: int):
    if item.quantity_available is not None:
        item.quantity_available += quantity
        if item.quantity_available > 0:
            item.available = True
    else:
        item.available = True


def reserved_quantity(booking: models.Booking) -> int:
    return booking.quantity or 1


# --- Acceptance ---

def accept_booking_request(
        db: Session,
        booking_id: str,
        supplier_id: str,
        item_id: int,
        operate_self: Optional[bool] = None,
        quantity_to_provide: Optional[int] = None,
) -> Acceptance:
    """
    Lets ``supplier_id`` claim a booking with the item ``item_id``.

    Dispatches on the booking's status:
      * Awaiting Operator: a driver joins a machine booking.
      * Pending Confirmation: the addressed supplier confirms a direct request.
      * Searching: any supplier takes an open broadcast, possibly partially.
    """
    try:
        try:
            booking = crud.get_booking(db, booking_id, for_update=True)
        except BookingNotFound:
            raise JobUnavailable()
        if booking.status not in models.ACCEPTABLE_STATUSES:
            raise JobUnavailable()

        item = crud.get_item(db, item_id, for_update=True)
        if item is None or not item.available:
            raise ItemUnavailable()
        if item.owner_id != supplier_id:
            raise ItemUnavailable("Selected item does not belong to this supplier.")

        if booking.status == BookingStatus.AWAITING_OPERATOR:
            if item.category != models.ItemCategory.DRIVERS:
                raise JobUnavailable("This booking is waiting for a driver.")
            result = _assign_operator(db, booking, supplier_id, item)
        elif booking.status == BookingStatus.PENDING_CONFIRMATION:
            result = _confirm_direct_request(db, booking, supplier_id, item)
        else:
            result = _accept_broadcast(db, booking, supplier_id, item, operate_self, quantity_to_provide)

        db.commit()
    except StaleDataError:
        db.rollback()
        logger.warning(f"Concurrent update while accepting booking {booking_id}.")
        raise JobUnavailable("This job was just taken by someone else.")
    except Exception:
        db.rollback()
        raise

    logger.info(
        f"Booking {result.confirmed.id} is {result.confirmed.status.value} "
        f"(supplier={supplier_id}, item={item_id})."
    )
    return result


def _assign_operator(db: Session, booking: models.Booking, driver_id: str, driver: models.Item) -> Acceptance:
    duration = pricing.duration_hours(booking)
    driver_charge = pricing.driver_hourly_rate(driver) * duration

    reserve_item(driver, 1)
    booking.operator_id = driver_id
    booking.operator_item_id = driver.id
    booking.final_price = pricing.round_half_up((booking.final_price or 0) + driver_charge)
    booking.status = BookingStatus.CONFIRMED

    machine = crud.get_item(db, booking.item_id) if booking.item_id is not None else None
    machine_name = machine.name if machine is not None else booking.item_category.value
    notify(db, booking.farmer_id, f"An operator has been found for your {machine_name} booking!")
    if booking.supplier_id:
        notify(db, booking.supplier_id, f"A driver has accepted the operator job for booking {booking.id}.")
    return Acceptance(confirmed=booking)


def _confirm_direct_request(db: Session, booking: models.Booking, supplier_id: str, item: models.Item) -> Acceptance:
    if booking.supplier_id is not None and booking.supplier_id != supplier_id:
        raise JobUnavailable("This request was sent to another supplier.")

    quote = pricing.compute_price(booking, item, quantity=1, demand=crud.count_searching_demand(db, booking))

    reserve_item(item, reserved_quantity(booking))
    booking.supplier_id = supplier_id
    booking.item_id = item.id
    booking.final_price = quote.final_price
    booking.status = BookingStatus.CONFIRMED

    notify(db, booking.farmer_id, f"Your request for {item.name} has been confirmed!")
    return Acceptance(confirmed=booking)


def _accept_broadcast(
        db: Session,
        booking: models.Booking,
        supplier_id: str,
        item: models.Item,
        operate_self: Optional[bool],
        quantity_to_provide: Optional[int],
) -> Acceptance:
    # Fails early with PurposeNotSupported before anything is touched
    pricing.find_purpose_price(item, booking.work_purpose)
    demand = crud.count_searching_demand(db, booking)

    is_machine_with_op = item.category in models.MACHINE_CATEGORIES and booking.operator_required

    # Supplier lends the machine but will not drive it: look for a driver next
    if is_machine_with_op and operate_self is False:
        quote = pricing.compute_price(booking, item, quantity=1, demand=demand, include_operator=False)
        reserve_item(item, reserved_quantity(booking))
        booking.supplier_id = supplier_id
        booking.item_id = item.id
        booking.final_price = quote.final_price
        booking.status = BookingStatus.AWAITING_OPERATOR
        notify(db, booking.farmer_id, f"{item.name} is confirmed for your booking. We are now finding a driver.")
        return Acceptance(confirmed=booking)

    quantity = quantity_to_provide or booking.quantity or 1
    if booking.quantity:
        quantity = min(quantity, booking.quantity)
    is_partial = bool(booking.allow_multiple_suppliers and booking.quantity and quantity < booking.quantity)

    quote = pricing.compute_price(booking, item, quantity=quantity, demand=demand)
    reserve_item(item, quantity)

    if is_partial:
        confirmed = models.Booking(
            id=crud.new_booking_id(db),
            **{
                column.key: getattr(booking, column.key)
                for column in models.Booking.__table__.columns
                if column.key not in _SPLIT_SKIP_COLUMNS
            },
        )
        db.add(confirmed)
        # The original row keeps the unfilled part of the request open
        booking.quantity = booking.quantity - quantity
        remaining = booking
    else:
        confirmed = booking
        remaining = None

    confirmed.supplier_id = supplier_id
    confirmed.item_id = item.id
    confirmed.quantity = quantity
    confirmed.operator_id = supplier_id if (is_machine_with_op and operate_self is True) else None
    confirmed.final_price = quote.final_price
    confirmed.allow_multiple_suppliers = False
    confirmed.status = BookingStatus.CONFIRMED

    if is_partial:
        notify(db, booking.farmer_id,
               f"{quantity} of your requested {booking.item_category.value} confirmed with {item.name}. "
               f"Still searching for the remaining {remaining.quantity}.")
    else:
        notify(db, booking.farmer_id, f"Your request for {item.name} has been confirmed!")
    return Acceptance(confirmed=confirmed, remaining=remaining)


def allot_booking(db: Session, booking_id: str, supplier_id: str, item_id: int) -> models.Booking:
    """
    Admin hand-off: turns an open broadcast into a direct request for one supplier.
    """
    booking = crud.get_booking(db, booking_id, for_update=True)
    if booking.status != BookingStatus.SEARCHING:
        raise JobUnavailable("Only bookings that are still searching can be allotted.")
    item = crud.get_item(db, item_id)
    if item is None:
        raise ItemUnavailable(f"Item {item_id} does not exist.")

    booking.supplier_id = supplier_id
    booking.item_id = item_id
    booking.status = BookingStatus.PENDING_CONFIRMATION
    notify(db, supplier_id,
           f"Admin has assigned a {booking.item_category.value} booking to you "
           f"({booking.location} on {booking.date.isoformat()}). Please confirm.")
    notify(db, booking.farmer_id,
           f"Good news! Admin has found a supplier for your {booking.item_category.value} booking. "
           f"Waiting for supplier confirmation.")
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise JobUnavailable("This job was just taken by someone else.")
    logger.info(f"Booking {booking_id} allotted to supplier {supplier_id}.")
    return booking
