import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, BigInteger, Boolean, DateTime, Numeric, ForeignKey, Index,
    CheckConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

ACTIVITY_PURCHASE = "purchase"
ACTIVITY_WITHDRAWAL = "withdrawal"
ACTIVITY_CLICK = "click"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def new_id() -> str:
    return str(uuid.uuid4())

class Seller(Base):
    __tablename__ = "sellers"
    id = Column(String(64), primary_key=True)
    email = Column(String(320))
    first_name = Column(String(128))
    # current rate, applied to future checkouts only
    platform_fee_percent = Column(Numeric(5, 2), nullable=False, default=20)
    available_funds_in_cents = Column(BigInteger, nullable=False, default=0)
    payout_account_id = Column(String(128))  # e.g. Stripe Connect account
    is_identity_verified = Column(Boolean, nullable=False, default=False)
    email_notification_link_purchases = Column(Boolean, nullable=False, default=True)
    email_notification_cash_out = Column(Boolean, nullable=False, default=True)
    __table_args__ = (
        CheckConstraint("available_funds_in_cents >= 0", name="ck_sellers_funds_non_negative"),
    )

class Content(Base):
    __tablename__ = "contents"
    id = Column(String(64), primary_key=True)
    seller_id = Column(String(64), ForeignKey("sellers.id"), nullable=False, index=True)
    url = Column(String(255), unique=True)
    name = Column(String(255))
    price_in_cents = Column(BigInteger, nullable=False, default=0)
    total_clicks = Column(BigInteger, nullable=False, default=0)
    total_sales = Column(BigInteger, nullable=False, default=0)
    total_earnings_in_cents = Column(BigInteger, nullable=False, default=0)  # gross

class ActivityRecord(Base):
    """Append-only ledger row. Never updated or deleted once written."""
    __tablename__ = "activities"
    id = Column(String(36), primary_key=True, default=new_id)
    content_id = Column(String(64), ForeignKey("contents.id"))
    seller_id = Column(String(64), ForeignKey("sellers.id"), nullable=False)
    type = Column(String(16), nullable=False)  # purchase|withdrawal|click
    amount_in_cents = Column(BigInteger)
    platform_fee_percent_snapshot = Column(Numeric(5, 2))
    external_payment_id = Column(String(255), unique=True)
    payer_email = Column(String(320))
    payout_method = Column(String(16))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    __table_args__ = (
        Index("ix_activities_content_created", "content_id", "created_at"),
        Index("ix_activities_seller_created", "seller_id", "created_at"),
    )

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(String(4000), nullable=False)
    activity_id = Column(String(36), index=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    status = Column(String(16), nullable=False, default="new")  # new|sent|failed
