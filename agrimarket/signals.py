"""
Sliding-window abuse and fraud signals.

Each occurrence is stored as a ``WindowEvent`` row in the caller's
transaction, so counts survive restarts and are shared by every instance
of the service.
"""
import datetime
from dataclasses import dataclass

from sqlalchemy.orm import Session

from . import crud
from .config import settings
from .notifications import notify_admin

ALL_SUBJECTS = "*"


@dataclass(frozen=True)
class SlidingWindowCounter:
    kind: str
    window: datetime.timedelta
    threshold: int

    def hit(self, db: Session, subject: str, now: datetime.datetime) -> int:
        """Records one occurrence and returns the count inside the trailing window."""
        crud.add_window_event(db, self.kind, subject, now)
        return crud.count_window_events(db, self.kind, subject, now - self.window)

    def tripped(self, count: int) -> bool:
        return count >= self.threshold


supplier_rejections = SlidingWindowCounter(
    kind="supplier_rejection",
    window=datetime.timedelta(hours=settings.REJECTION_WINDOW_HOURS),
    threshold=settings.REJECTION_ALERT_THRESHOLD,
)

final_payments = SlidingWindowCounter(
    kind="final_payment",
    window=datetime.timedelta(minutes=settings.PAYMENT_SPIKE_WINDOW_MINUTES),
    threshold=settings.PAYMENT_SPIKE_THRESHOLD,
)


def record_supplier_rejection(db: Session, supplier_id: str, now: datetime.datetime) -> bool:
    """
    Counts a rejected direct request. Every rejection at or past the
    threshold inside the window raises one admin alert.
    Returns True when an alert was raised.
    """
    count = supplier_rejections.hit(db, supplier_id, now)
    if supplier_rejections.tripped(count):
        notify_admin(db, f"Supplier {supplier_id} rejected {count} direct requests in "
                         f"{settings.REJECTION_WINDOW_HOURS}h.")
        return True
    return False


def record_final_payment(db: Session, now: datetime.datetime) -> bool:
    count = final_payments.hit(db, ALL_SUBJECTS, now)
    if final_payments.tripped(count):
        notify_admin(db, f"Payment attempts spike detected: {count} payments in the last "
                         f"{settings.PAYMENT_SPIKE_WINDOW_MINUTES} minutes.")
        return True
    return False
