from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import crud, disputes, schemas
from ..auth import CurrentAdminId, CurrentUserId
from ..database import get_db
from ..errors import BookingError
from ..models import DamageReportStatus
from .booking_router import http_error

router = APIRouter(prefix="/damage-reports", tags=["Damage Reports"])


@router.post("/", response_model=schemas.DamageReportRead, status_code=status.HTTP_201_CREATED)
def report_damage(
        report: schemas.DamageReportCreate,
        reporter_id: CurrentUserId,
        db: Session = Depends(get_db),
):
    try:
        return disputes.report_damage(db, report, reporter_id)
    except BookingError as e:
        raise http_error(e)


@router.get("/", response_model=List[schemas.DamageReportRead])
def read_damage_reports(
        admin_id: CurrentAdminId,
        db: Session = Depends(get_db),
        booking_id: Optional[str] = None,
        report_status: Optional[DamageReportStatus] = None,
        skip: int = 0,
        limit: int = 100,
):
    return crud.get_damage_reports(db, booking_id=booking_id, status=report_status, skip=skip, limit=limit)


@router.post("/{report_id}/resolve", response_model=schemas.DamageReportRead)
def resolve_damage_claim(report_id: int, admin_id: CurrentAdminId, db: Session = Depends(get_db)):
    try:
        return disputes.resolve_damage_claim(db, report_id)
    except BookingError as e:
        raise http_error(e)
