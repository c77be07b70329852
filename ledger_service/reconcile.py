"""
Rebuild running totals by replaying the activity ledger.

The contents/sellers totals are caches of sums over ActivityRecords. This
module recomputes those sums so drift can be reported, and so the ledger
writer can restore them after an incident.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.error_handling import SellerNotFound
from common.fees import compute_seller_share
from ledger_service.models import (
    ACTIVITY_CLICK, ACTIVITY_PURCHASE, ACTIVITY_WITHDRAWAL, ActivityRecord, Content, Seller,
)

logger = logging.getLogger(__name__)


@dataclass
class ContentTotals:
    total_clicks: int = 0
    total_sales: int = 0
    total_earnings_in_cents: int = 0

    def as_dict(self) -> dict:
        return {
            "total_clicks": self.total_clicks,
            "total_sales": self.total_sales,
            "total_earnings_in_cents": self.total_earnings_in_cents,
        }


@dataclass
class SellerReplay:
    seller_id: str
    available_funds_in_cents: int = 0
    contents: Dict[str, ContentTotals] = field(default_factory=dict)


@dataclass
class ReconciliationReport:
    seller_id: str
    stored_available_funds_in_cents: int
    expected_available_funds_in_cents: int
    content_drift: List[dict]

    @property
    def consistent(self) -> bool:
        return (
            self.stored_available_funds_in_cents == self.expected_available_funds_in_cents
            and not self.content_drift
        )


def replay_seller(db: Session, seller_id: str) -> SellerReplay:
    """Fold every ActivityRecord of a seller, oldest first, into expected totals."""
    replay = SellerReplay(seller_id=seller_id)
    content_ids = db.execute(select(Content.id).where(Content.seller_id == seller_id)).scalars().all()
    for content_id in content_ids:
        replay.contents[content_id] = ContentTotals()

    records = db.execute(
        select(ActivityRecord)
        .where(ActivityRecord.seller_id == seller_id)
        .order_by(ActivityRecord.created_at, ActivityRecord.id)
    ).scalars()

    for record in records:
        totals = replay.contents.setdefault(record.content_id, ContentTotals()) if record.content_id else None
        if record.type == ACTIVITY_PURCHASE:
            totals.total_sales += 1
            totals.total_earnings_in_cents += record.amount_in_cents
            # the stored snapshot, never the seller's current rate
            replay.available_funds_in_cents += compute_seller_share(
                record.amount_in_cents, record.platform_fee_percent_snapshot
            )
        elif record.type == ACTIVITY_WITHDRAWAL:
            replay.available_funds_in_cents -= record.amount_in_cents
        elif record.type == ACTIVITY_CLICK:
            totals.total_clicks += 1
        else:
            logger.warning("Skipping activity %s with unknown type %r", record.id, record.type)
    return replay


def reconcile_seller(db: Session, seller_id: str) -> ReconciliationReport:
    """Compare stored totals against a replay. Read-only."""
    seller = db.get(Seller, seller_id)
    if seller is None:
        raise SellerNotFound(f"Seller {seller_id} not found", field="seller_id")

    replay = replay_seller(db, seller_id)
    drift = []
    stored_contents = db.execute(select(Content).where(Content.seller_id == seller_id)).scalars().all()
    for content in stored_contents:
        stored = ContentTotals(content.total_clicks, content.total_sales, content.total_earnings_in_cents)
        expected = replay.contents.get(content.id, ContentTotals())
        if stored != expected:
            drift.append({"content_id": content.id, "stored": stored.as_dict(), "expected": expected.as_dict()})

    report = ReconciliationReport(
        seller_id=seller_id,
        stored_available_funds_in_cents=seller.available_funds_in_cents,
        expected_available_funds_in_cents=replay.available_funds_in_cents,
        content_drift=drift,
    )
    if not report.consistent:
        logger.error("Ledger drift detected for seller %s", seller_id, extra={
            "stored_funds": report.stored_available_funds_in_cents,
            "expected_funds": report.expected_available_funds_in_cents,
            "drifted_contents": [d["content_id"] for d in drift],
        })
    return report
