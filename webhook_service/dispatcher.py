"""
Idempotent settlement dispatcher for payment-provider webhooks.

Verifies the signature over the raw body, keeps only confirmed-payment events
and turns each into exactly one ledger purchase. Redeliveries of the same
payment are acknowledged as duplicates. Events that can never succeed are
acknowledged as malformed so the provider stops retrying them; storage
failures propagate so the provider redelivers later.
"""
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from common.error_handling import ContentNotFound, InvalidFeePercent, MalformedEvent
from common.fees import normalize_fee_percent
from common.security import verify_webhook_signature
from common.tracing import webhook_tracer
from ledger_service.ledger import LedgerWriter, RecordedPurchase

logger = logging.getLogger(__name__)

PAYMENT_CONFIRMED_EVENTS = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
})

STATUS_RECORDED = "recorded"
STATUS_DUPLICATE = "duplicate"
STATUS_IGNORED = "ignored"
STATUS_MALFORMED = "malformed"


@dataclass(frozen=True)
class SettlementEvent:
    external_payment_id: str
    content_id: str
    base_price_in_cents: int
    platform_fee_percent: Decimal
    payer_email: Optional[str] = None
    content_name: Optional[str] = None
    content_url: Optional[str] = None


@dataclass(frozen=True)
class DispatchResult:
    status: str
    activity_id: Optional[str] = None

    @property
    def recorded(self) -> bool:
        return self.status == STATUS_RECORDED


def _parse_cents(raw: Any) -> int:
    if isinstance(raw, bool):
        raise MalformedEvent("basePriceInCents must be an integer", field="basePriceInCents")
    try:
        cents = int(str(raw).strip())
    except (TypeError, ValueError):
        raise MalformedEvent("basePriceInCents must be an integer", field="basePriceInCents")
    if cents <= 0:
        raise MalformedEvent("basePriceInCents must be positive", field="basePriceInCents",
                             context={"basePriceInCents": cents})
    return cents


def _payment_id(session: Dict[str, Any]) -> str:
    intent = session.get("payment_intent")
    if isinstance(intent, dict):
        intent = intent.get("id")
    if not isinstance(intent, str) or not intent.strip():
        raise MalformedEvent("Checkout session has no payment_intent", field="payment_intent")
    return intent.strip()


def _session_object(event: Dict[str, Any]) -> Any:
    data = event.get("data")
    return data.get("object") if isinstance(data, dict) else None


def extract_settlement(event: Dict[str, Any]) -> SettlementEvent:
    """Pull the purchase fields out of a checkout session event."""
    session = _session_object(event)
    if not isinstance(session, dict):
        raise MalformedEvent("Event has no data.object", field="data.object")
    metadata = session.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedEvent("Checkout metadata must be an object", field="metadata")

    content_id = metadata.get("linkId")
    if not content_id:
        raise MalformedEvent("Checkout metadata is missing linkId", field="linkId")
    if "basePriceInCents" not in metadata:
        raise MalformedEvent("Checkout metadata is missing basePriceInCents", field="basePriceInCents")
    try:
        fee = normalize_fee_percent(metadata.get("platformFeePercent"))
    except InvalidFeePercent as e:
        raise MalformedEvent(e.message, field="platformFeePercent")

    details = session.get("customer_details") or {}
    payer_email = metadata.get("customerEmail") or session.get("customer_email") or details.get("email")
    return SettlementEvent(
        external_payment_id=_payment_id(session),
        content_id=str(content_id),
        base_price_in_cents=_parse_cents(metadata["basePriceInCents"]),
        platform_fee_percent=fee,
        payer_email=payer_email,
        content_name=metadata.get("linkName"),
        content_url=metadata.get("linkUrl"),
    )


class SettlementDispatcher:

    def __init__(self, ledger: LedgerWriter, webhook_secret: str, tolerance: Optional[int] = None):
        self.ledger = ledger
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def dispatch(
        self,
        payload: bytes,
        signature: Optional[str],
        on_recorded: Optional[Callable[[RecordedPurchase], None]] = None,
    ) -> DispatchResult:
        """Handle one webhook delivery.

        Raises InvalidSignature before anything is parsed or written. Raises
        StorageUnavailable when the ledger could not commit, which callers
        turn into a retryable response.
        """
        body = verify_webhook_signature(payload, signature, self.webhook_secret, self.tolerance)
        try:
            event = json.loads(body)
        except ValueError:
            logger.warning("Signed webhook body is not JSON")
            return DispatchResult(STATUS_MALFORMED)
        if not isinstance(event, dict):
            return DispatchResult(STATUS_MALFORMED)

        event_type = event.get("type")
        with webhook_tracer.start_span("dispatch_settlement") as span:
            span.add_tag("event.id", event.get("id"))
            span.add_tag("event.type", event_type)

            if event_type not in PAYMENT_CONFIRMED_EVENTS:
                logger.info("Ignoring webhook event %s of type %s", event.get("id"), event_type)
                return DispatchResult(STATUS_IGNORED)
            session = _session_object(event)
            if isinstance(session, dict) and session.get("payment_status") != "paid":
                # async methods complete later with async_payment_succeeded
                logger.info("Checkout %s not paid yet (%s)", session.get("id"), session.get("payment_status"))
                return DispatchResult(STATUS_IGNORED)

            try:
                settlement = extract_settlement(event)
                span.add_tag("payment.id", settlement.external_payment_id)
                recorded = self.ledger.record_purchase(
                    settlement.content_id,
                    settlement.base_price_in_cents,
                    settlement.external_payment_id,
                    platform_fee_percent=settlement.platform_fee_percent,
                    payer_email=settlement.payer_email,
                )
            except (MalformedEvent, ContentNotFound) as e:
                logger.error("Dropping malformed settlement event %s: %s", event.get("id"), e.message,
                             extra={"field": e.field, "code": e.code})
                span.add_tag("dispatch.status", STATUS_MALFORMED)
                return DispatchResult(STATUS_MALFORMED)

            if recorded.duplicate:
                span.add_tag("dispatch.status", STATUS_DUPLICATE)
                return DispatchResult(STATUS_DUPLICATE, recorded.record.id)

            span.add_tag("dispatch.status", STATUS_RECORDED)
            if on_recorded is not None:
                try:
                    on_recorded(recorded)
                except Exception:
                    logger.exception("Post-record hook failed for activity %s", recorded.record.id)
            return DispatchResult(STATUS_RECORDED, recorded.record.id)
