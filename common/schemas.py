from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import List, Literal, Optional

class WithdrawalRequest(BaseModel):
    seller_id: str
    requested_amount_in_cents: int = Field(gt=0)
    payout_method: Literal["standard", "instant"] = "standard"

class WithdrawalReceipt(BaseModel):
    activity_id: str
    seller_id: str
    amount_in_cents: int
    fee_in_cents: int
    net_amount_in_cents: int
    payout_method: str
    available_funds_in_cents: int

class LedgerEvent(BaseModel):
    """Payload relayed from the outbox to Kafka after a ledger commit."""
    type: Literal["PurchaseRecorded", "WithdrawalRecorded"]
    activity_id: str
    seller_id: str
    content_id: Optional[str] = None
    amount_in_cents: int
    trace_id: Optional[str] = None

class ActivityOut(BaseModel):
    id: str
    type: str
    content_id: Optional[str] = None
    seller_id: str
    amount_in_cents: Optional[int] = None
    platform_fee_percent_snapshot: Optional[Decimal] = None
    external_payment_id: Optional[str] = None
    payout_method: Optional[str] = None
    created_at: datetime

class ActivityPage(BaseModel):
    activities: List[ActivityOut]
    total_count: int
    has_more: bool

class PurchaseStatus(BaseModel):
    """Unlock check the buyer page can poll while the webhook is retried."""
    recorded: bool
    activity_id: Optional[str] = None
    content_id: Optional[str] = None
    created_at: Optional[datetime] = None

class WalletSummary(BaseModel):
    seller_id: str
    available_funds_in_cents: int
    wallet_configured: bool
    recent_sales: List[ActivityOut]
    withdrawals: List[ActivityOut]

class CheckoutQuote(BaseModel):
    content_id: str
    base_price_in_cents: int
    total_charge_in_cents: int
    seller_share_in_cents: int
    platform_profit_in_cents: int
    platform_fee_percent: Decimal
    metadata: dict

class ContentDrift(BaseModel):
    content_id: str
    stored: dict
    expected: dict

class ReconciliationOut(BaseModel):
    seller_id: str
    stored_available_funds_in_cents: int
    expected_available_funds_in_cents: int
    content_drift: List[ContentDrift]
    consistent: bool

class DispatchResponse(BaseModel):
    received: bool = True
    status: Literal["recorded", "duplicate", "ignored", "malformed"]
    activity_id: Optional[str] = None
