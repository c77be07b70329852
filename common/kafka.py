from functools import lru_cache
from confluent_kafka import Producer, Consumer, KafkaException
from common.settings import settings

TOPIC_LEDGER_EVENTS = "ledger_events"

@lru_cache(maxsize=1)
def get_producer() -> Producer:
    return Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})

def get_consumer(group_id: str, topics: list[str]):
    c = Consumer({
        "bootstrap.servers": settings.kafka_bootstrap,
        "group.id": group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
    })
    c.subscribe(topics)
    return c

class KafkaPublisher:
    """Synchronous publish: returns only once the broker has acknowledged the message."""

    def __init__(self, producer: Producer = None, flush_timeout: float = 10.0):
        self.producer = producer or get_producer()
        self.flush_timeout = flush_timeout

    def publish(self, topic: str, value: bytes, key: bytes = None) -> None:
        errors = []

        def on_delivery(err, msg):
            if err is not None:
                errors.append(err)

        self.producer.produce(topic, value=value, key=key, on_delivery=on_delivery)
        remaining = self.producer.flush(self.flush_timeout)
        if remaining:
            raise TimeoutError(f"{remaining} message(s) still queued for {topic}")
        if errors:
            raise KafkaException(errors[0])
