"""
Read model over the activity ledger.

Wallet, stats and unlock pages only ever read through these helpers; nothing
here writes. All helpers take an open Session so callers decide how long a
read snapshot lives.
"""
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger_service.models import (
    ACTIVITY_PURCHASE, ACTIVITY_WITHDRAWAL, ActivityRecord, Content, Seller,
)


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def _in_range(stmt, start: Optional[datetime], end: Optional[datetime]):
    # half-open window [start, end)
    if start is not None:
        stmt = stmt.where(ActivityRecord.created_at >= start)
    if end is not None:
        stmt = stmt.where(ActivityRecord.created_at < end)
    return stmt


def find_purchase(db: Session, external_payment_id: str) -> Optional[ActivityRecord]:
    """Has this payment been recorded? Safe to poll from the buyer's page."""
    return db.execute(
        select(ActivityRecord).where(
            ActivityRecord.external_payment_id == external_payment_id,
            ActivityRecord.type == ACTIVITY_PURCHASE,
        )
    ).scalar_one_or_none()


def find_purchase_by_email(db: Session, content_id: str, email: str) -> Optional[ActivityRecord]:
    """Latest purchase of a content by a buyer email."""
    email = normalize_email(email)
    if email is None:
        return None
    return db.execute(
        select(ActivityRecord)
        .where(
            ActivityRecord.content_id == content_id,
            ActivityRecord.type == ACTIVITY_PURCHASE,
            ActivityRecord.payer_email == email,
        )
        .order_by(ActivityRecord.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def list_content_activities(
    db: Session,
    content_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    skip: int = 0,
    take: int = 20,
) -> Tuple[List[ActivityRecord], int]:
    """One page of a content's activity, newest first, plus the total count."""
    base = _in_range(select(ActivityRecord).where(ActivityRecord.content_id == content_id), start, end)
    total = db.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    rows = db.execute(
        base.order_by(ActivityRecord.created_at.desc()).offset(skip).limit(take)
    ).scalars().all()
    return list(rows), total


def list_seller_activities(
    db: Session,
    seller_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    types: Sequence[str] = (ACTIVITY_PURCHASE, ACTIVITY_WITHDRAWAL),
    limit: int = 50,
) -> List[ActivityRecord]:
    stmt = select(ActivityRecord).where(
        ActivityRecord.seller_id == seller_id,
        ActivityRecord.type.in_(list(types)),
    )
    stmt = _in_range(stmt, start, end).order_by(ActivityRecord.created_at.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def sum_purchases(
    db: Session,
    content_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Tuple[int, int]:
    """(number of purchases, gross cents) for a content in a date range."""
    stmt = select(
        func.count(ActivityRecord.id),
        func.coalesce(func.sum(ActivityRecord.amount_in_cents), 0),
    ).where(
        ActivityRecord.content_id == content_id,
        ActivityRecord.type == ACTIVITY_PURCHASE,
    )
    count, gross = db.execute(_in_range(stmt, start, end)).one()
    return int(count), int(gross)


def get_available_funds(db: Session, seller_id: str) -> Optional[int]:
    return db.execute(
        select(Seller.available_funds_in_cents).where(Seller.id == seller_id)
    ).scalar_one_or_none()


def get_content(db: Session, content_id: str) -> Optional[Content]:
    return db.get(Content, content_id)


def get_seller(db: Session, seller_id: str) -> Optional[Seller]:
    return db.get(Seller, seller_id)


def wallet_summary(db: Session, seller_id: str, limit: int = 50
                   ) -> Optional[Tuple[Seller, List[ActivityRecord], List[ActivityRecord]]]:
    """(seller, recent sales, withdrawals) or None when the seller is unknown."""
    seller = db.get(Seller, seller_id)
    if seller is None:
        return None
    records = list_seller_activities(db, seller_id, limit=limit)
    sales = [r for r in records if r.type == ACTIVITY_PURCHASE]
    withdrawals = [r for r in records if r.type == ACTIVITY_WITHDRAWAL]
    return seller, sales, withdrawals
