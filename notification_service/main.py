import json, logging, threading
from contextlib import asynccontextmanager
from functools import lru_cache
from confluent_kafka import TopicPartition
from fastapi import FastAPI
from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker
from common.kafka import get_consumer, TOPIC_LEDGER_EVENTS
from common.redis_client import RedisClient, get_redis_client
from common.schemas import LedgerEvent
from common.settings import settings
from ledger_service.db import get_session_factory
from notification_service.fanout import NotificationFanout, load_purchase_notice, load_withdrawal_notice
from notification_service.mailer import ResendMailer

logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 2.0

@lru_cache(maxsize=1)
def get_fanout() -> NotificationFanout:
    return NotificationFanout(ResendMailer())

def handle_event(evt: LedgerEvent, fanout: NotificationFanout, dedup: RedisClient,
                 sessions: sessionmaker) -> str:
    """Fan out one ledger event at most once per activity. Returns what happened."""
    event_id = f"{evt.type}:{evt.activity_id}"
    if not dedup.claim_once(f"notif:{event_id}", settings.notification_dedup_ttl_seconds):
        logger.info(f"Skipping already notified event {event_id}")
        return "duplicate"
    try:
        with sessions() as db:
            if evt.type == "PurchaseRecorded":
                notice = load_purchase_notice(db, evt.activity_id)
            else:
                notice = load_withdrawal_notice(db, evt.activity_id)
    except Exception:
        # let a redelivery try again
        dedup.release(f"notif:{event_id}")
        raise
    if notice is None:
        logger.warning(f"No ledger row for event {event_id}")
        return "missing"
    if evt.type == "PurchaseRecorded":
        report = fanout.notify_purchase(notice)
    else:
        report = fanout.notify_withdrawal(notice)
    logger.info(f"Notified {event_id}: sent={report.sent} skipped={report.skipped} failed={report.failed}")
    return "notified"

def process_message(c, msg, fanout: NotificationFanout, dedup: RedisClient, sessions: sessionmaker) -> bool:
    """Handle one polled message. Returns False when it was rewound for redelivery."""
    try:
        evt = LedgerEvent.model_validate(json.loads(msg.value()))
    except (ValueError, ValidationError):
        logger.error(f"Dropping unreadable ledger event: {msg.value()[:200]!r}")
        c.commit(msg)
        return True
    try:
        handle_event(evt, fanout, dedup, sessions)
    except Exception:
        logger.exception(f"Failed to handle ledger event {evt.activity_id}, rewinding")
        # the next poll returns this offset again
        c.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
        return False
    c.commit(msg)
    return True

def consume(stop: threading.Event):
    c = get_consumer("notification-service", [TOPIC_LEDGER_EVENTS])
    fanout, dedup, sessions = get_fanout(), get_redis_client(), get_session_factory()
    try:
        while not stop.is_set():
            msg = c.poll(1.0)
            if not msg or msg.error():
                continue
            if not process_message(c, msg, fanout, dedup, sessions):
                stop.wait(RETRY_BACKOFF_SECONDS)
    finally:
        c.close()

@asynccontextmanager
async def lifespan(app: FastAPI):
    stop = threading.Event()
    threading.Thread(target=consume, args=(stop,), daemon=True).start()
    yield
    stop.set()

app = FastAPI(title="Notification Service", lifespan=lifespan)

@app.get("/health")
async def health():
    return {"ok": True, "service": "notification", "redis": get_redis_client().ping()}

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8003)
