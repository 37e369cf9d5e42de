import threading
from confluent_kafka import Producer
from common.settings import settings

TOPIC_PURCHASE_EVENTS = "purchase_events"

_producer = None
_producer_lock = threading.Lock()

def get_producer() -> Producer:
    """Idempotent producer, created on first use so importing this module never touches the broker."""
    global _producer
    with _producer_lock:
        if _producer is None:
            _producer = Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})
        return _producer
