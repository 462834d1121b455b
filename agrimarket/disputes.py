import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import crud, models, schemas
from .lifecycle import require_party
from .models import DamageReportStatus
from .notifications import notify_admin

logger = logging.getLogger("agrimarket")


def raise_dispute(db: Session, booking_id: str, actor_id: Optional[str] = None) -> models.Booking:
    """Flags a booking for admin review. Allowed in any status, for either party."""
    booking = crud.get_booking(db, booking_id)
    require_party(booking, actor_id, farmer=True, supplier=True)
    booking.dispute_raised = True
    notify_admin(db, f"Dispute raised for booking {booking_id}.")
    db.commit()
    logger.info(f"Dispute raised for booking {booking_id}.")
    return booking


def resolve_dispute(db: Session, booking_id: str) -> models.Booking:
    booking = crud.get_booking(db, booking_id)
    booking.dispute_resolved = True
    db.commit()
    logger.info(f"Dispute resolved for booking {booking_id}.")
    return booking


def report_damage(db: Session, report: schemas.DamageReportCreate, reporter_id: str) -> models.DamageReport:
    booking = crud.get_booking(db, report.booking_id)
    db_report = crud.create_damage_report(db, report, reporter_id)
    booking.damage_reported = True
    notify_admin(db, f"Damage reported for booking {booking.id} by {reporter_id}.")
    db.commit()
    db.refresh(db_report)
    logger.info(f"Damage report {db_report.id} filed for booking {booking.id}.")
    return db_report


def resolve_damage_claim(db: Session, report_id: int) -> models.DamageReport:
    report = crud.get_damage_report(db, report_id)
    report.status = DamageReportStatus.RESOLVED
    db.commit()
    logger.info(f"Damage report {report_id} resolved.")
    return report
