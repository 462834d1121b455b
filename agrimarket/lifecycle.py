"""
Post-confirmation lifecycle:

    Confirmed -> Arrived -> In Process -> {Completed | Pending Payment} -> Completed

plus cancellation and direct-request rejection.
"""
import datetime
import logging
import secrets
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import crud, models, signals
from .errors import InvalidOtp, InvalidTransition, JobUnavailable, NotAParty
from .matching import release_item, reserved_quantity
from .models import BookingStatus, PaymentMethod
from .notifications import notify

logger = logging.getLogger("agrimarket")

COMMISSION_RATE = 0


def generate_otp() -> str:
    """Six-digit code, uniform over 100000..999999."""
    return str(100000 + secrets.randbelow(900000))


def _commit(db: Session, booking: models.Booking):
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise JobUnavailable(f"Booking {booking.id} was modified concurrently. Please retry.")


def _require_status(booking: models.Booking, *allowed: BookingStatus):
    if booking.status not in allowed:
        raise InvalidTransition(
            f"Booking {booking.id} is '{booking.status.value}'; expected "
            + " or ".join(f"'{s.value}'" for s in allowed) + "."
        )


def require_party(booking: models.Booking, actor_id: Optional[str], farmer: bool = False, supplier: bool = False):
    """
    Raises NotAParty unless ``actor_id`` is on one of the allowed sides of
    the booking. A driver bound as operator counts as the supplier side.
    ``actor_id=None`` means an internal caller and skips the check.
    """
    if actor_id is None:
        return
    allowed = set()
    if farmer:
        allowed.add(booking.farmer_id)
    if supplier:
        allowed.update((booking.supplier_id, booking.operator_id))
    allowed.discard(None)
    if str(actor_id) not in allowed:
        logger.warning(f"User {actor_id} tried to act on booking {booking.id} without being a party to it.")
        raise NotAParty()


def _payment_details(amount: int, now: datetime.datetime, method: Optional[PaymentMethod] = None) -> dict:
    commission = round(amount * COMMISSION_RATE)
    details = {
        "farmer_amount": amount,
        "supplier_amount": amount - commission,
        "commission": commission,
        "total_amount": amount,
        "payment_date": now.isoformat(),
    }
    if method is not None:
        details["method"] = method.value
    return details


def mark_as_arrived(db: Session, booking_id: str, actor_id: Optional[str] = None) -> tuple[models.Booking, str]:
    """
    Supplier reached the field. Issues a fresh OTP for the farmer to hand over.
    Returns the booking and the OTP.
    """
    booking = crud.get_booking(db, booking_id, for_update=True)
    require_party(booking, actor_id, supplier=True)
    _require_status(booking, BookingStatus.CONFIRMED)

    otp = generate_otp()
    booking.status = BookingStatus.ARRIVED
    booking.otp_code = otp
    booking.otp_verified = False
    notify(db, booking.farmer_id,
           f"Your service has arrived. Share this OTP with the supplier to start work: {otp}")
    _commit(db, booking)
    logger.info(f"Booking {booking_id} marked as arrived.")
    return booking, otp


def verify_otp_and_start_work(
        db: Session,
        booking_id: str,
        otp: str,
        now: Optional[datetime.datetime] = None,
        actor_id: Optional[str] = None,
) -> models.Booking:
    booking = crud.get_booking(db, booking_id, for_update=True)
    require_party(booking, actor_id, farmer=True, supplier=True)
    if booking.status != BookingStatus.ARRIVED or not booking.otp_code:
        raise InvalidTransition("Cannot start work yet.")
    if not secrets.compare_digest(booking.otp_code, otp):
        logger.warning(f"Invalid OTP entered for booking {booking_id}.")
        raise InvalidOtp()

    booking.status = BookingStatus.IN_PROCESS
    booking.otp_verified = True
    booking.work_start_time = now or datetime.datetime.utcnow()
    short_id = booking.id[:5]
    notify(db, booking.farmer_id, f"Supplier started work for booking #{short_id}.")
    if booking.supplier_id:
        notify(db, booking.supplier_id, f"OTP verified. You have started work for booking #{short_id}.")
    _commit(db, booking)
    logger.info(f"Booking {booking_id} is in process.")
    return booking


def complete_booking(
        db: Session,
        booking_id: str,
        now: Optional[datetime.datetime] = None,
        actor_id: Optional[str] = None,
) -> models.Booking:
    """
    Work is done. A booking paid in full upfront closes immediately;
    anything else waits for the final payment.
    """
    now = now or datetime.datetime.utcnow()
    booking = crud.get_booking(db, booking_id, for_update=True)
    require_party(booking, actor_id, farmer=True, supplier=True)
    _require_status(booking, BookingStatus.IN_PROCESS)

    final_price = booking.final_price or booking.estimated_price or 0
    details = _payment_details(final_price, now)
    booking.payment_details = details
    short_id = booking.id[:5]

    paid_upfront = bool(booking.advance_amount and booking.estimated_price
                        and booking.advance_amount == booking.estimated_price)
    if paid_upfront:
        booking.final_price = booking.estimated_price
        booking.final_payment_id = booking.advance_payment_id
        booking.status = BookingStatus.COMPLETED
        if booking.supplier_id:
            notify(db, booking.supplier_id,
                   f"Work for booking #{short_id} is complete. "
                   f"Payment of ₹{details['supplier_amount']} will be processed.")
    else:
        booking.final_price = final_price
        booking.status = BookingStatus.PENDING_PAYMENT
        if booking.supplier_id:
            notify(db, booking.supplier_id,
                   f"The farmer has marked booking #{short_id} as complete. "
                   f"Awaiting final payment of ₹{final_price}.")
    _commit(db, booking)
    logger.info(f"Booking {booking_id} is {booking.status.value}.")
    return booking


def make_final_payment(
        db: Session,
        booking_id: str,
        actor_id: Optional[str] = None,
        method: PaymentMethod = PaymentMethod.CASH,
        now: Optional[datetime.datetime] = None,
) -> models.Booking:
    now = now or datetime.datetime.utcnow()
    booking = crud.get_booking(db, booking_id, for_update=True)
    require_party(booking, actor_id, farmer=True)
    _require_status(booking, BookingStatus.PENDING_PAYMENT)

    final_price = booking.final_price or booking.estimated_price or 0
    details = _payment_details(final_price, now, method)
    stamp = int(now.timestamp() * 1000)

    booking.final_payment_id = f"cash_{stamp}" if method == PaymentMethod.CASH else f"final_pay_{stamp}"
    booking.payment_method = method
    booking.payment_details = details
    booking.status = BookingStatus.COMPLETED
    if booking.supplier_id:
        notify(db, booking.supplier_id,
               f"{method.value} payment received for booking #{booking.id[:5]}. "
               f"Supplier payout: ₹{details['supplier_amount']}.")
    signals.record_final_payment(db, now)
    _commit(db, booking)
    logger.info(f"Final payment {booking.final_payment_id} recorded for booking {booking_id}.")
    return booking


def cancel_booking(db: Session, booking_id: str, actor_id: Optional[str] = None) -> models.Booking:
    """
    Cancels a booking that has not finished and gives reserved inventory back.
    """
    booking = crud.get_booking(db, booking_id, for_update=True)
    require_party(booking, actor_id, farmer=True, supplier=True)
    if booking.status in models.TERMINAL_STATUSES:
        raise InvalidTransition(f"Booking {booking_id} is already {booking.status.value}.")

    # Items are only reserved once a supplier has claimed the booking
    if booking.status in models.HOLDING_STATUSES:
        if booking.item_id is not None:
            item = crud.get_item(db, booking.item_id, for_update=True)
            if item is not None:
                release_item(item, reserved_quantity(booking))
        if booking.operator_item_id is not None:
            driver = crud.get_item(db, booking.operator_item_id, for_update=True)
            if driver is not None:
                release_item(driver, 1)
        for party in {booking.supplier_id, booking.operator_id} - {None}:
            notify(db, party, f"Booking #{booking.id[:5]} has been cancelled.")

    booking.status = BookingStatus.CANCELLED
    _commit(db, booking)
    logger.info(f"Booking {booking_id} cancelled.")
    return booking


def reject_booking(
        db: Session,
        booking_id: str,
        now: Optional[datetime.datetime] = None,
        actor_id: Optional[str] = None,
) -> models.Booking:
    """
    The addressed supplier turns down a direct request. The request is
    rebroadcast to every supplier and the rejection counts toward the
    supplier's abuse window.
    """
    now = now or datetime.datetime.utcnow()
    booking = crud.get_booking(db, booking_id, for_update=True)
    require_party(booking, actor_id, supplier=True)
    if booking.status != BookingStatus.PENDING_CONFIRMATION:
        raise InvalidTransition("Cannot reject this booking.")

    supplier_id = booking.supplier_id
    booking.status = BookingStatus.SEARCHING
    booking.is_rebroadcast = True
    booking.supplier_id = None
    booking.item_id = None
    notify(db, booking.farmer_id,
           "Your direct request was rejected and is now being sent to all suppliers. Prices may vary.")
    if supplier_id:
        signals.record_supplier_rejection(db, supplier_id, now)
    _commit(db, booking)
    logger.info(f"Booking {booking_id} rejected by supplier {supplier_id}; rebroadcast.")
    return booking
