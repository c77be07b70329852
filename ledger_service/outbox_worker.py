import logging, time
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import sessionmaker
from common.kafka import KafkaPublisher
from common.retry import KAFKA_RETRY_CONFIG, RetryConfig, retry_call
from common.settings import settings
from ledger_service.db import get_session_factory
from ledger_service.models import Outbox

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
MAX_ATTEMPTS = 10

def relay_once(session_factory: sessionmaker, publisher, limit: int = BATCH_SIZE,
               retry_config: RetryConfig = KAFKA_RETRY_CONFIG) -> int:
    """Publish committed outbox rows in insertion order. Returns how many were sent.

    Delivery is at-least-once: a crash between publish and the status update
    republishes the row, and consumers dedup on the activity id.
    """
    sent = 0
    with session_factory() as db:
        rows = db.execute(
            select(Outbox)
            .where(Outbox.status.in_(("new", "failed")), Outbox.attempts < MAX_ATTEMPTS)
            .order_by(Outbox.id)
            .limit(limit)
        ).scalars().all()
        for row in rows:
            try:
                retry_call(publisher.publish, retry_config, row.topic, row.payload.encode("utf-8"),
                           key=row.activity_id.encode("utf-8") if row.activity_id else None)
            except Exception:
                logger.exception("Failed to publish outbox row %s", row.id)
                db.execute(update(Outbox).where(Outbox.id == row.id)
                           .values(status="failed", attempts=Outbox.attempts + 1))
                db.commit()
                continue
            db.execute(update(Outbox).where(Outbox.id == row.id)
                       .values(status="sent", attempts=Outbox.attempts + 1))
            db.commit()
            sent += 1
    if sent:
        logger.info("Relayed %s ledger event(s)", sent)
    return sent

def run(poll_interval: float = None):
    session_factory = get_session_factory()
    publisher = KafkaPublisher()
    interval = poll_interval if poll_interval is not None else settings.outbox_poll_interval
    logger.info("Outbox relay started")
    while True:
        try:
            relay_once(session_factory, publisher)
        except DBAPIError:
            logger.exception("Outbox relay could not reach the database")
        time.sleep(interval)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    run()
