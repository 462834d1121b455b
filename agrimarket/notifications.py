import datetime
import json
import logging

from sqlalchemy.orm import Session

from . import models
from .config import settings

logger = logging.getLogger("agrimarket")

BOOKING = "booking"
ADMIN = "admin"


def notify(db: Session, user_id: str, message: str, category: str = BOOKING):
    """
    Queues a notification in the outbox table.
    Note: Does NOT commit. The notification is sent only if the caller's
    transaction commits, and the outbox poller delivers it to Kafka.
    """
    payload = {
        "user_id": str(user_id),
        "message": message,
        "category": category,
        "created_at": datetime.datetime.utcnow().isoformat(),
    }
    db.add(models.OutboxEvent(
        topic=settings.KAFKA_NOTIFICATION_TOPIC,
        payload=json.dumps(payload),
        status="PENDING",
    ))


def notify_admin(db: Session, message: str):
    logger.warning(f"Admin alert: {message}")
    notify(db, settings.ADMIN_USER_ID, message, ADMIN)
