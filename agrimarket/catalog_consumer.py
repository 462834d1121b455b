import json
import logging

from aiokafka import AIOKafkaConsumer
from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import crud, schemas
from .config import settings
from .database import SessionLocal

logger = logging.getLogger("catalog_consumer")


def apply_catalog_message(db: Session, raw: bytes) -> bool:
    """
    Upserts the item described by one catalog message.
    Returns False for messages that were skipped.
    """
    try:
        item = schemas.ItemUpsert.model_validate(json.loads(raw.decode("utf-8")))
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.error(f"Failed to decode message: {raw!r}")
        return False
    except ValidationError as e:
        logger.warning(f"Skipping malformed catalog message: {e}")
        return False

    try:
        crud.upsert_item(db, item)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Synced item {item.id} ({item.category.value}) from catalog.")
    return True


async def consume_catalog_updates():
    """
    Keeps the local item mirror in step with the catalog service.
    """
    consumer = AIOKafkaConsumer(
        settings.KAFKA_CATALOG_TOPIC,
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        group_id="agrimarket_catalog_sync_group",
        auto_offset_reset="earliest"
    )

    logger.info("Starting Kafka consumer...")
    await consumer.start()
    logger.info("Kafka consumer started. Listening for catalog updates...")

    try:
        async for msg in consumer:
            db: Session = SessionLocal()
            try:
                apply_catalog_message(db, msg.value)
            except Exception as e:
                logger.error(f"Error processing message: {e}")
            finally:
                db.close()
    finally:
        logger.info("Stopping Kafka consumer...")
        await consumer.stop()
