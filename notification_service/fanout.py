"""
Best-effort notification fan-out for committed ledger activity.

Every email is attempted on its own: a failure is logged and recorded in the
report, and never stops the next email or reaches the caller. The money is
already recorded by the time anything here runs.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from common.tracing import notification_tracer
from ledger_service.models import ACTIVITY_PURCHASE, ACTIVITY_WITHDRAWAL, ActivityRecord, Content, Seller
from notification_service.mailer import build_message
from notification_service.templates import (
    TEMPLATE_CASH_OUT, TEMPLATE_LINK_PURCHASE, TEMPLATE_PURCHASE_LINK,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseNotice:
    activity_id: str
    content_id: str
    content_url: str
    content_name: Optional[str]
    amount_in_cents: int
    payer_email: Optional[str] = None
    seller_email: Optional[str] = None
    notify_seller: bool = False


@dataclass(frozen=True)
class WithdrawalNotice:
    activity_id: str
    amount_in_cents: int
    payout_method: str
    seller_email: Optional[str] = None
    seller_first_name: Optional[str] = None
    notify_seller: bool = False


@dataclass
class FanoutReport:
    sent: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class NotificationFanout:

    def __init__(self, mailer):
        self.mailer = mailer

    def _attempt(self, report: FanoutReport, template: str, to: Optional[str], data: dict,
                 activity_id: str, wanted: bool = True) -> None:
        if not to or not wanted:
            report.skipped.append(template)
            return
        try:
            self.mailer.send(build_message(to, template, data))
        except Exception as e:
            logger.warning(f"Notification {template} for activity {activity_id} not delivered: {e}",
                           exc_info=True)
            report.failed.append(template)
            return
        report.sent.append(template)

    def notify_purchase(self, notice: PurchaseNotice) -> FanoutReport:
        """Buyer access link, then the seller's sale email when they opted in."""
        report = FanoutReport()
        with notification_tracer.start_span("notify_purchase") as span:
            span.add_tag("activity.id", notice.activity_id)
            self._attempt(report, TEMPLATE_PURCHASE_LINK, notice.payer_email, {
                "content_url": notice.content_url,
                "content_name": notice.content_name,
            }, notice.activity_id)
            self._attempt(report, TEMPLATE_LINK_PURCHASE, notice.seller_email, {
                "content_url": notice.content_url,
                "content_name": notice.content_name,
                "amount_in_cents": notice.amount_in_cents,
            }, notice.activity_id, wanted=notice.notify_seller)
            span.add_tag("notifications.failed", len(report.failed))
        return report

    def notify_withdrawal(self, notice: WithdrawalNotice) -> FanoutReport:
        report = FanoutReport()
        with notification_tracer.start_span("notify_withdrawal") as span:
            span.add_tag("activity.id", notice.activity_id)
            self._attempt(report, TEMPLATE_CASH_OUT, notice.seller_email, {
                "amount_in_cents": notice.amount_in_cents,
                "payout_method": notice.payout_method,
                "first_name": notice.seller_first_name,
            }, notice.activity_id, wanted=notice.notify_seller)
            span.add_tag("notifications.failed", len(report.failed))
        return report


def load_purchase_notice(db: Session, activity_id: str) -> Optional[PurchaseNotice]:
    """Join a committed purchase with its content and seller contact data."""
    record = db.get(ActivityRecord, activity_id)
    if record is None or record.type != ACTIVITY_PURCHASE:
        return None
    content = db.get(Content, record.content_id)
    seller = db.get(Seller, record.seller_id)
    if content is None:
        return None
    return PurchaseNotice(
        activity_id=record.id,
        content_id=content.id,
        content_url=content.url or content.id,
        content_name=content.name,
        amount_in_cents=record.amount_in_cents,
        payer_email=record.payer_email,
        seller_email=seller.email if seller else None,
        notify_seller=bool(seller and seller.email_notification_link_purchases),
    )


def load_withdrawal_notice(db: Session, activity_id: str) -> Optional[WithdrawalNotice]:
    record = db.get(ActivityRecord, activity_id)
    if record is None or record.type != ACTIVITY_WITHDRAWAL:
        return None
    seller = db.get(Seller, record.seller_id)
    return WithdrawalNotice(
        activity_id=record.id,
        amount_in_cents=record.amount_in_cents,
        payout_method=record.payout_method or "standard",
        seller_email=seller.email if seller else None,
        seller_first_name=seller.first_name if seller else None,
        notify_seller=bool(seller and seller.email_notification_cash_out),
    )
