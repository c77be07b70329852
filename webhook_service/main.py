import logging
from functools import lru_cache
from typing import Callable, Optional
from fastapi import FastAPI, BackgroundTasks, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from common.error_handling import add_error_handlers
from common.kafka import KafkaPublisher
from common.schemas import DispatchResponse
from common.settings import settings
from common.tracing import webhook_tracer, tracing_middleware
from ledger_service.db import get_session_factory
from ledger_service.ledger import LedgerWriter
from ledger_service.outbox_worker import relay_once
from webhook_service.dispatcher import SettlementDispatcher

logger = logging.getLogger(__name__)

app = FastAPI(title="Webhook Service")
add_error_handlers(app)

@app.middleware("http")
async def trace_requests(request: Request, call_next):
    return await tracing_middleware(request, call_next, webhook_tracer)

@lru_cache(maxsize=1)
def get_dispatcher() -> SettlementDispatcher:
    return SettlementDispatcher(LedgerWriter(get_session_factory()), settings.stripe_webhook_secret)

def get_relay() -> Optional[Callable[[], None]]:
    """Nudges the outbox relay so notifications go out without waiting for the next poll."""
    def relay():
        try:
            relay_once(get_session_factory(), KafkaPublisher())
        except Exception:
            # the standalone relay worker picks the rows up on its next pass
            logger.exception("Inline outbox relay failed")
    return relay

@app.post("/webhooks/stripe", response_model=DispatchResponse)
async def stripe_webhook(
    request: Request,
    background: BackgroundTasks,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    dispatcher: SettlementDispatcher = Depends(get_dispatcher),
    relay: Optional[Callable[[], None]] = Depends(get_relay),
):
    """Settle a checkout. 2xx means the provider may stop retrying this delivery."""
    payload = await request.body()

    def schedule_relay(recorded):
        if relay is not None:
            background.add_task(relay)

    result = await run_in_threadpool(dispatcher.dispatch, payload, stripe_signature, schedule_relay)
    return DispatchResponse(status=result.status, activity_id=result.activity_id)

@app.get("/health")
async def health():
    return {"ok": True, "service": "webhook"}
