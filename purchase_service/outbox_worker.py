import logging, threading
from sqlalchemy import select, update
from confluent_kafka import KafkaException
from common.kafka import get_producer, TOPIC_PURCHASE_EVENTS
from common.schemas import PurchaseEvent
from purchase_service.models import Outbox

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
BATCH_SIZE = 50

def enqueue_event(db, event: PurchaseEvent, topic: str = TOPIC_PURCHASE_EVENTS) -> None:
    """Stage an event in the caller's transaction; it is published only if that transaction commits."""
    db.add(Outbox(topic=topic, payload=event.model_dump_json(exclude_none=True)))

def publish_pending(session_factory, producer=None) -> int:
    """One pass over unsent outbox rows. Returns how many were published."""
    producer = producer or get_producer()
    sent = 0
    with session_factory() as db:
        rows = db.execute(
            select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(BATCH_SIZE)
        ).scalars().all()
        for row in rows:
            try:
                producer.produce(row.topic, value=row.payload.encode("utf-8"))
                producer.flush()
                db.execute(update(Outbox).where(Outbox.id == row.id).values(status="sent"))
                sent += 1
            except KafkaException as e:
                logger.error(f"Failed to publish outbox row {row.id}: {e}")
                db.execute(update(Outbox).where(Outbox.id == row.id).values(status="failed"))
            db.commit()
    return sent

def run(session_factory, stop_event: threading.Event):
    while not stop_event.is_set():
        try:
            publish_pending(session_factory)
        except Exception:
            logger.exception("Outbox pass failed")
        stop_event.wait(POLL_INTERVAL)
