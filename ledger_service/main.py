import logging
from datetime import datetime
from typing import Optional
from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session, sessionmaker
from common.error_handling import (
    ContentNotFound, PurchaseNotFound, SellerNotFound, add_error_handlers,
)
from common.fees import (
    compute_instant_payout_fee, compute_platform_profit, compute_seller_share,
    compute_total_charge, normalize_fee_percent,
)
from common.schemas import (
    ActivityOut, ActivityPage, CheckoutQuote, PurchaseStatus, ReconciliationOut,
    WalletSummary, WithdrawalReceipt, WithdrawalRequest,
)
from common.security import verify_token, mint_internal_jwt
from common.settings import settings
from common.tracing import ledger_tracer, tracing_middleware
from ledger_service import queries
from ledger_service.db import get_session_factory
from ledger_service.ledger import LedgerWriter
from ledger_service.reconcile import reconcile_seller

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger Service")
add_error_handlers(app)

@app.middleware("http")
async def trace_requests(request: Request, call_next):
    return await tracing_middleware(request, call_next, ledger_tracer)

def get_sessions() -> sessionmaker:
    return get_session_factory()

def get_db(sessions: sessionmaker = Depends(get_sessions)):
    with sessions() as db:
        yield db

def get_ledger(sessions: sessionmaker = Depends(get_sessions)) -> LedgerWriter:
    return LedgerWriter(sessions)

# Simple dependency to check internal auth (down-scoped token)
async def internal_auth(authorization: str = Header(...)):
    if not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    token = authorization.split(" ",1)[1]
    try:
        verify_token(token, audience="ledger")
    except Exception as e:
        logger.warning(f"Rejected internal token: {e}")
        raise HTTPException(401, f"invalid internal token: {e}")

def _activity_out(record) -> ActivityOut:
    return ActivityOut(
        id=record.id,
        type=record.type,
        content_id=record.content_id,
        seller_id=record.seller_id,
        amount_in_cents=record.amount_in_cents,
        platform_fee_percent_snapshot=record.platform_fee_percent_snapshot,
        external_payment_id=record.external_payment_id,
        payout_method=record.payout_method,
        created_at=record.created_at,
    )

@app.post("/withdrawals", response_model=WithdrawalReceipt, dependencies=[Depends(internal_auth)])
def withdraw(req: WithdrawalRequest, ledger: LedgerWriter = Depends(get_ledger), db: Session = Depends(get_db)):
    """Debit the seller's wallet. The payout itself is made by the payout collaborator."""
    record = ledger.record_withdrawal(req.seller_id, req.requested_amount_in_cents, req.payout_method)
    fee = compute_instant_payout_fee(record.amount_in_cents) if record.payout_method == "instant" else 0
    return WithdrawalReceipt(
        activity_id=record.id,
        seller_id=record.seller_id,
        amount_in_cents=record.amount_in_cents,
        fee_in_cents=fee,
        net_amount_in_cents=record.amount_in_cents - fee,
        payout_method=record.payout_method,
        available_funds_in_cents=queries.get_available_funds(db, record.seller_id),
    )

@app.post("/contents/{content_id}/clicks", status_code=204)
def click(content_id: str, ledger: LedgerWriter = Depends(get_ledger)):
    ledger.record_click(content_id)

@app.get("/purchases/{external_payment_id}", response_model=PurchaseStatus)
def purchase_status(external_payment_id: str, db: Session = Depends(get_db)):
    """Pollable unlock check; does not depend on the webhook's side effects."""
    record = queries.find_purchase(db, external_payment_id)
    if record is None:
        return PurchaseStatus(recorded=False)
    return PurchaseStatus(recorded=True, activity_id=record.id, content_id=record.content_id,
                          created_at=record.created_at)

@app.get("/contents/{content_id}/purchases/verify", response_model=ActivityOut)
def verify_purchase(content_id: str, email: str = Query(..., min_length=3), db: Session = Depends(get_db)):
    record = queries.find_purchase_by_email(db, content_id, email)
    if record is None:
        raise PurchaseNotFound("No purchase found for this email", field="email")
    return _activity_out(record)

@app.get("/contents/{content_id}/activities", response_model=ActivityPage)
def content_activities(
    content_id: str,
    skip: int = Query(0, ge=0),
    take: int = Query(20, ge=1, le=100),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    if queries.get_content(db, content_id) is None:
        raise ContentNotFound(f"Content {content_id} not found", field="content_id")
    records, total = queries.list_content_activities(db, content_id, start, end, skip, take)
    return ActivityPage(
        activities=[_activity_out(r) for r in records],
        total_count=total,
        has_more=skip + take < total,
    )

@app.get("/contents/{content_id}/checkout-quote", response_model=CheckoutQuote)
def checkout_quote(content_id: str, email: Optional[str] = None, db: Session = Depends(get_db)):
    """Price a checkout and the metadata snapshot the checkout session must carry."""
    content = queries.get_content(db, content_id)
    if content is None:
        raise ContentNotFound(f"Content {content_id} not found", field="content_id")
    seller = queries.get_seller(db, content.seller_id)
    fee = normalize_fee_percent(seller.platform_fee_percent if seller else None)
    base = content.price_in_cents
    total = compute_total_charge(base, fee)
    metadata = {
        "linkId": content.id,
        "linkUrl": content.url or "",
        "linkName": content.name or content.url or "",
        "basePriceInCents": str(base),
        "totalPriceInCents": str(total),
        "platformFeePercent": str(fee),
    }
    if email:
        metadata["customerEmail"] = email
    return CheckoutQuote(
        content_id=content.id,
        base_price_in_cents=base,
        total_charge_in_cents=total,
        seller_share_in_cents=compute_seller_share(base, fee),
        platform_profit_in_cents=compute_platform_profit(base, fee),
        platform_fee_percent=fee,
        metadata=metadata,
    )

@app.get("/sellers/{seller_id}/wallet", response_model=WalletSummary)
def wallet(seller_id: str, db: Session = Depends(get_db)):
    summary = queries.wallet_summary(db, seller_id)
    if summary is None:
        raise SellerNotFound(f"Seller {seller_id} not found", field="seller_id")
    seller, sales, withdrawals = summary
    return WalletSummary(
        seller_id=seller.id,
        available_funds_in_cents=seller.available_funds_in_cents,
        wallet_configured=bool(seller.payout_account_id),
        recent_sales=[_activity_out(r) for r in sales],
        withdrawals=[_activity_out(r) for r in withdrawals],
    )

@app.get("/sellers/{seller_id}/reconciliation", response_model=ReconciliationOut)
def reconciliation(seller_id: str, db: Session = Depends(get_db)):
    report = reconcile_seller(db, seller_id)
    return ReconciliationOut(
        seller_id=report.seller_id,
        stored_available_funds_in_cents=report.stored_available_funds_in_cents,
        expected_available_funds_in_cents=report.expected_available_funds_in_cents,
        content_drift=report.content_drift,
        consistent=report.consistent,
    )

@app.post("/sellers/{seller_id}/rebuild", dependencies=[Depends(internal_auth)])
def rebuild(seller_id: str, ledger: LedgerWriter = Depends(get_ledger)):
    replay = ledger.rebuild_aggregates(seller_id)
    return {
        "seller_id": seller_id,
        "available_funds_in_cents": replay.available_funds_in_cents,
        "contents": {cid: totals.as_dict() for cid, totals in replay.contents.items()},
    }

@app.get("/health")
async def health():
    return {"ok": True, "service": "ledger"}

# Local helper for minting an internal token; in production the gateway issues them
@app.get("/mint-internal-token")
async def mint():
    if not settings.allow_dev_token_mint:
        raise HTTPException(404, "Not Found")
    return {"token": mint_internal_jwt(aud="ledger")}
