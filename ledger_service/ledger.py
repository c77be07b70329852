"""
Activity ledger writer.

The only code allowed to create ActivityRecords or to change the running
totals on contents and sellers. Each mutation commits in one database
transaction together with its ledger row and, for money movements, an outbox
event, so the totals can always be rebuilt by replaying the ledger and
notifications only ever see committed rows.

Counters move through atomic ``UPDATE ... SET x = x + n`` statements, never a
read-modify-write in Python, so concurrent webhooks on several instances
cannot lose an increment.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from common.error_handling import (
    BusinessLogicError, ContentNotFound, ErrorCodes, IdentityNotVerified, InsufficientFunds,
    InvalidAmount, MalformedEvent, SellerNotFound, StorageUnavailable, WalletNotConfigured,
)
from common.fees import (
    DEFAULT_PLATFORM_FEE_PERCENT, FeePercent, compute_seller_share, normalize_fee_percent,
)
from common.kafka import TOPIC_LEDGER_EVENTS
from common.schemas import LedgerEvent
from common.tracing import get_current_trace_id
from ledger_service.models import (
    ACTIVITY_CLICK, ACTIVITY_PURCHASE, ACTIVITY_WITHDRAWAL,
    ActivityRecord, Content, Outbox, Seller, new_id, utcnow,
)
from ledger_service.queries import find_purchase, normalize_email
from ledger_service.reconcile import SellerReplay, replay_seller

logger = logging.getLogger(__name__)

PAYOUT_METHODS = ("standard", "instant")

_NO_SYNC = {"synchronize_session": False}


@dataclass(frozen=True)
class RecordedPurchase:
    record: ActivityRecord
    duplicate: bool


class LedgerWriter:

    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    def record_purchase(
        self,
        content_id: str,
        base_price_in_cents: int,
        external_payment_id: str,
        platform_fee_percent: FeePercent = DEFAULT_PLATFORM_FEE_PERCENT,
        payer_email: Optional[str] = None,
    ) -> RecordedPurchase:
        """Record a paid purchase at most once per external payment id.

        A repeat call with a known payment id returns the stored record with
        ``duplicate=True`` and changes nothing. The seller is credited using
        ``platform_fee_percent`` as captured at checkout, not the seller's
        current rate.
        """
        if not external_payment_id:
            raise MalformedEvent("external_payment_id is required", field="external_payment_id")
        fee = normalize_fee_percent(platform_fee_percent)
        seller_share = compute_seller_share(base_price_in_cents, fee)

        try:
            with self._sessions() as db:
                existing = find_purchase(db, external_payment_id)
                if existing is not None:
                    logger.info("Payment %s already recorded as activity %s", external_payment_id, existing.id)
                    return RecordedPurchase(existing, duplicate=True)

                content = db.get(Content, content_id)
                if content is None:
                    raise ContentNotFound(f"Content {content_id} not found", field="content_id")

                record = ActivityRecord(
                    id=new_id(),
                    content_id=content.id,
                    seller_id=content.seller_id,
                    type=ACTIVITY_PURCHASE,
                    amount_in_cents=base_price_in_cents,
                    platform_fee_percent_snapshot=fee,
                    external_payment_id=external_payment_id,
                    payer_email=normalize_email(payer_email),
                    created_at=utcnow(),
                )
                db.add(record)
                # the unique index on external_payment_id rejects a concurrent twin here
                db.flush()

                # seller row first, same lock order as rebuild_aggregates
                credited = db.execute(
                    update(Seller)
                    .where(Seller.id == content.seller_id)
                    .values(available_funds_in_cents=Seller.available_funds_in_cents + seller_share)
                    .execution_options(**_NO_SYNC)
                )
                if credited.rowcount != 1:
                    raise SellerNotFound(f"Seller {content.seller_id} not found", field="seller_id")
                db.execute(
                    update(Content)
                    .where(Content.id == content.id)
                    .values(
                        total_sales=Content.total_sales + 1,
                        total_earnings_in_cents=Content.total_earnings_in_cents + base_price_in_cents,
                    )
                    .execution_options(**_NO_SYNC)
                )
                self._enqueue(db, "PurchaseRecorded", record)
                db.commit()
        except IntegrityError as e:
            return self._resolve_concurrent_purchase(external_payment_id, e)
        except DBAPIError as e:
            logger.error("Ledger write failed for payment %s", external_payment_id, exc_info=True)
            raise StorageUnavailable("Could not record purchase", original_error=e) from e

        logger.info(
            "Purchase recorded for content %s: %s cents, seller credited %s cents",
            record.content_id, base_price_in_cents, seller_share,
            extra={"activity_id": record.id, "external_payment_id": external_payment_id},
        )
        return RecordedPurchase(record, duplicate=False)

    def _resolve_concurrent_purchase(self, external_payment_id: str, error: IntegrityError) -> RecordedPurchase:
        try:
            with self._sessions() as db:
                existing = find_purchase(db, external_payment_id)
        except DBAPIError as e:
            raise StorageUnavailable("Could not record purchase", original_error=e) from e
        if existing is None:
            raise StorageUnavailable("Purchase rejected by a database constraint", original_error=error) from error
        logger.info("Payment %s was recorded by a concurrent delivery", external_payment_id)
        return RecordedPurchase(existing, duplicate=True)

    def record_withdrawal(
        self,
        seller_id: str,
        amount_in_cents: int,
        payout_method: str = "standard",
    ) -> ActivityRecord:
        """Debit a seller's available funds. Never lets the balance go negative."""
        if payout_method not in PAYOUT_METHODS:
            raise BusinessLogicError(
                "Invalid payout method. Must be 'instant' or 'standard'",
                code=ErrorCodes.INVALID_INPUT, field="payout_method",
            )
        if isinstance(amount_in_cents, bool) or not isinstance(amount_in_cents, int) or amount_in_cents <= 0:
            raise InvalidAmount("Withdrawal amount must be a positive number of cents", field="amount_in_cents")

        try:
            with self._sessions() as db:
                seller = db.get(Seller, seller_id)
                if seller is None:
                    raise SellerNotFound(f"Seller {seller_id} not found", field="seller_id")
                if not seller.payout_account_id:
                    raise WalletNotConfigured("Please configure your wallet before withdrawing funds")
                if not seller.is_identity_verified:
                    raise IdentityNotVerified("Please complete identity verification before withdrawing funds")

                # the balance check and the debit are one statement
                debited = db.execute(
                    update(Seller)
                    .where(Seller.id == seller_id, Seller.available_funds_in_cents >= amount_in_cents)
                    .values(available_funds_in_cents=Seller.available_funds_in_cents - amount_in_cents)
                    .execution_options(**_NO_SYNC)
                )
                if debited.rowcount != 1:
                    available = db.execute(
                        select(Seller.available_funds_in_cents).where(Seller.id == seller_id)
                    ).scalar_one()
                    raise InsufficientFunds(
                        "Withdrawal exceeds available funds",
                        field="requested_amount_in_cents",
                        context={"available_funds_in_cents": available, "requested_amount_in_cents": amount_in_cents},
                    )

                record = ActivityRecord(
                    id=new_id(),
                    content_id=None,
                    seller_id=seller_id,
                    type=ACTIVITY_WITHDRAWAL,
                    amount_in_cents=amount_in_cents,
                    payout_method=payout_method,
                    created_at=utcnow(),
                )
                db.add(record)
                self._enqueue(db, "WithdrawalRecorded", record)
                db.commit()
        except DBAPIError as e:
            logger.error("Ledger write failed for withdrawal by seller %s", seller_id, exc_info=True)
            raise StorageUnavailable("Could not record withdrawal", original_error=e) from e

        logger.info("Withdrawal of %s cents recorded for seller %s", amount_in_cents, seller_id,
                    extra={"activity_id": record.id, "payout_method": payout_method})
        return record

    def record_click(self, content_id: str) -> None:
        try:
            with self._sessions() as db:
                bumped = db.execute(
                    update(Content)
                    .where(Content.id == content_id)
                    .values(total_clicks=Content.total_clicks + 1)
                    .execution_options(**_NO_SYNC)
                )
                if bumped.rowcount != 1:
                    raise ContentNotFound(f"Content {content_id} not found", field="content_id")
                seller_id = db.execute(select(Content.seller_id).where(Content.id == content_id)).scalar_one()
                db.add(ActivityRecord(
                    id=new_id(),
                    content_id=content_id,
                    seller_id=seller_id,
                    type=ACTIVITY_CLICK,
                    created_at=utcnow(),
                ))
                db.commit()
        except DBAPIError as e:
            raise StorageUnavailable("Could not record click", original_error=e) from e

    def rebuild_aggregates(self, seller_id: str) -> SellerReplay:
        """Overwrite a seller's totals with a replay of the ledger.

        Recovery path only. Row locks on the seller and its contents make
        concurrent ledger writes wait until the rebuilt totals are committed.
        """
        try:
            with self._sessions() as db:
                seller = db.execute(
                    select(Seller).where(Seller.id == seller_id).with_for_update()
                ).scalar_one_or_none()
                if seller is None:
                    raise SellerNotFound(f"Seller {seller_id} not found", field="seller_id")
                db.execute(select(Content.id).where(Content.seller_id == seller_id).with_for_update()).all()

                replay = replay_seller(db, seller_id)
                for content_id, totals in replay.contents.items():
                    db.execute(
                        update(Content)
                        .where(Content.id == content_id)
                        .values(**totals.as_dict())
                        .execution_options(**_NO_SYNC)
                    )
                db.execute(
                    update(Seller)
                    .where(Seller.id == seller_id)
                    .values(available_funds_in_cents=replay.available_funds_in_cents)
                    .execution_options(**_NO_SYNC)
                )
                db.commit()
        except DBAPIError as e:
            raise StorageUnavailable("Could not rebuild aggregates", original_error=e) from e

        logger.warning("Aggregates rebuilt from ledger for seller %s", seller_id,
                       extra={"available_funds_in_cents": replay.available_funds_in_cents})
        return replay

    def _enqueue(self, db: Session, event_type: str, record: ActivityRecord) -> None:
        event = LedgerEvent(
            type=event_type,
            activity_id=record.id,
            seller_id=record.seller_id,
            content_id=record.content_id,
            amount_in_cents=record.amount_in_cents,
            trace_id=get_current_trace_id(),
        )
        db.add(Outbox(topic=TOPIC_LEDGER_EVENTS, payload=event.model_dump_json(), activity_id=record.id))
