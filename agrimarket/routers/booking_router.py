from typing import List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from .. import crud, disputes, lifecycle, matching, schemas
from ..auth import CurrentAdminId, CurrentUserId, TokenClaims, get_key_by_user_id_or_ip, is_admin
from ..database import get_db
from ..errors import BookingError
from ..models import OPEN_STATUSES, BookingStatus, ItemCategory

router = APIRouter(prefix="/bookings", tags=["Bookings"])

write_limiter = RateLimiter(times=30, minutes=1, identifier=get_key_by_user_id_or_ip)
read_limiter = RateLimiter(times=60, minutes=1, identifier=get_key_by_user_id_or_ip)


def http_error(exc: BookingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


@router.post("/", response_model=List[schemas.BookingRead], status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(write_limiter)])
def create_bookings(
        drafts: Union[schemas.BookingCreate, List[schemas.BookingCreate]],
        farmer_id: CurrentUserId,
        db: Session = Depends(get_db),
):
    """
    Create one booking, or several at once for a multi-item request.
    """
    if not isinstance(drafts, list):
        drafts = [drafts]
    if not drafts:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No bookings to create.")
    try:
        return crud.create_bookings(db=db, drafts=drafts, farmer_id=farmer_id)
    except BookingError as e:
        raise http_error(e)


@router.get("/", response_model=List[schemas.BookingRead], dependencies=[Depends(read_limiter)])
def read_bookings(
        claims: TokenClaims,
        db: Session = Depends(get_db),
        farmer_id: Optional[str] = None,
        supplier_id: Optional[str] = None,
        booking_status: Optional[BookingStatus] = None,
        item_category: Optional[ItemCategory] = None,
        location: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
):
    """
    Get the caller's own bookings. Asking for an open status (Searching,
    Awaiting Operator) lists every open booking so suppliers and drivers
    can find work. Admins see everything.
    """
    party_id = None
    if not is_admin(claims) and booking_status not in OPEN_STATUSES:
        party_id = str(claims["sub"])
    return crud.get_bookings(
        db,
        farmer_id=farmer_id,
        supplier_id=supplier_id,
        status=booking_status,
        item_category=item_category,
        location=location,
        party_id=party_id,
        skip=skip,
        limit=limit,
    )


@router.get("/{booking_id}", response_model=schemas.BookingRead)
def read_booking(booking_id: str, claims: TokenClaims, db: Session = Depends(get_db)):
    try:
        booking = crud.get_booking(db, booking_id)
        if not is_admin(claims) and booking.status not in OPEN_STATUSES:
            lifecycle.require_party(booking, str(claims["sub"]), farmer=True, supplier=True)
    except BookingError as e:
        raise http_error(e)
    return booking


@router.post("/{booking_id}/accept", response_model=schemas.AcceptanceRead, dependencies=[Depends(write_limiter)])
def accept_booking(
        booking_id: str,
        request: schemas.AcceptRequest,
        supplier_id: CurrentUserId,
        db: Session = Depends(get_db),
):
    """
    Claim a booking with one of the supplier's items.
    """
    try:
        result = matching.accept_booking_request(
            db,
            booking_id=booking_id,
            supplier_id=supplier_id,
            item_id=request.item_id,
            operate_self=request.operate_self,
            quantity_to_provide=request.quantity_to_provide,
        )
    except BookingError as e:
        raise http_error(e)
    return schemas.AcceptanceRead(
        confirmed=schemas.BookingRead.model_validate(result.confirmed),
        remaining=schemas.BookingRead.model_validate(result.remaining) if result.remaining is not None else None,
    )


@router.post("/{booking_id}/reject", response_model=schemas.BookingRead)
def reject_booking(booking_id: str, user_id: CurrentUserId, db: Session = Depends(get_db)):
    try:
        return lifecycle.reject_booking(db, booking_id, actor_id=user_id)
    except BookingError as e:
        raise http_error(e)


@router.post("/{booking_id}/cancel", response_model=schemas.BookingRead)
def cancel_booking(booking_id: str, user_id: CurrentUserId, db: Session = Depends(get_db)):
    try:
        return lifecycle.cancel_booking(db, booking_id, actor_id=user_id)
    except BookingError as e:
        raise http_error(e)


@router.post("/{booking_id}/arrive", response_model=schemas.BookingRead)
def mark_arrived(booking_id: str, user_id: CurrentUserId, db: Session = Depends(get_db)):
    """
    The OTP is delivered to the farmer only, never in this response.
    """
    try:
        booking, _otp = lifecycle.mark_as_arrived(db, booking_id, actor_id=user_id)
    except BookingError as e:
        raise http_error(e)
    return booking


@router.post("/{booking_id}/verify-otp", response_model=schemas.BookingRead)
def verify_otp(
        booking_id: str,
        request: schemas.VerifyOtpRequest,
        user_id: CurrentUserId,
        db: Session = Depends(get_db),
):
    try:
        return lifecycle.verify_otp_and_start_work(db, booking_id, request.otp, actor_id=user_id)
    except BookingError as e:
        raise http_error(e)


@router.post("/{booking_id}/complete", response_model=schemas.BookingRead)
def complete_booking(booking_id: str, user_id: CurrentUserId, db: Session = Depends(get_db)):
    try:
        return lifecycle.complete_booking(db, booking_id, actor_id=user_id)
    except BookingError as e:
        raise http_error(e)


@router.post("/{booking_id}/pay", response_model=schemas.BookingRead, dependencies=[Depends(write_limiter)])
def make_final_payment(
        booking_id: str,
        request: schemas.PaymentRequest,
        user_id: CurrentUserId,
        db: Session = Depends(get_db),
):
    try:
        return lifecycle.make_final_payment(db, booking_id, method=request.method, actor_id=user_id)
    except BookingError as e:
        raise http_error(e)


@router.post("/{booking_id}/dispute", response_model=schemas.BookingRead)
def raise_dispute(booking_id: str, user_id: CurrentUserId, db: Session = Depends(get_db)):
    try:
        return disputes.raise_dispute(db, booking_id, actor_id=user_id)
    except BookingError as e:
        raise http_error(e)


@router.post("/{booking_id}/dispute/resolve", response_model=schemas.BookingRead)
def resolve_dispute(booking_id: str, admin_id: CurrentAdminId, db: Session = Depends(get_db)):
    try:
        return disputes.resolve_dispute(db, booking_id)
    except BookingError as e:
        raise http_error(e)


@router.post("/{booking_id}/allot", response_model=schemas.BookingRead)
def allot_booking(
        booking_id: str,
        request: schemas.AllotRequest,
        admin_id: CurrentAdminId,
        db: Session = Depends(get_db),
):
    """
    Admin hands an open broadcast to a specific supplier for confirmation.
    """
    try:
        return matching.allot_booking(db, booking_id, request.supplier_id, request.item_id)
    except BookingError as e:
        raise http_error(e)
