#!/usr/bin/env python3
"""
Notification fan-out tests: independent best-effort emails, seller opt-outs,
Redis dedup in the ledger event consumer, and the Resend mailer.
"""
import unittest

import requests
from sqlalchemy.exc import OperationalError

from common.error_handling import NotificationDeliveryFailed
from common.redis_client import RedisClient
from common.retry import RetryConfig
from common.schemas import LedgerEvent
from ledger_service.ledger import LedgerWriter
from notification_service.fanout import (
    NotificationFanout, PurchaseNotice, WithdrawalNotice, load_purchase_notice, load_withdrawal_notice,
)
from notification_service.mailer import EmailMessage, ResendMailer, build_message
from notification_service.main import handle_event, process_message
from support import FakeMailer, FakeRedis, TempLedger


def purchase_notice(**overrides):
    fields = dict(
        activity_id="act-1",
        content_id="content-1",
        content_url="my-guide",
        content_name="My Guide",
        amount_in_cents=2000,
        payer_email="buyer@example.com",
        seller_email="seller@example.com",
        notify_seller=True,
    )
    fields.update(overrides)
    return PurchaseNotice(**fields)


class TestPurchaseFanout(unittest.TestCase):

    def test_buyer_and_seller_notified(self):
        mailer = FakeMailer()
        report = NotificationFanout(mailer).notify_purchase(purchase_notice())

        self.assertEqual(report.sent, ["purchase_link", "link_purchase"])
        self.assertEqual(report.failed, [])
        buyer, seller = mailer.sent
        self.assertEqual(buyer.to, "buyer@example.com")
        self.assertEqual(buyer.subject, "Your Purchase Link - My Guide")
        self.assertIn("/my-guide", buyer.html)
        self.assertEqual(seller.to, "seller@example.com")
        self.assertEqual(seller.subject, "Your Link Was Purchased - My Guide")
        self.assertIn("$20.00", seller.text)

    def test_seller_opt_out_respected(self):
        mailer = FakeMailer()
        report = NotificationFanout(mailer).notify_purchase(purchase_notice(notify_seller=False))
        self.assertEqual([m.template for m in mailer.sent], ["purchase_link"])
        self.assertEqual(report.skipped, ["link_purchase"])

    def test_unknown_buyer_email_skipped(self):
        mailer = FakeMailer()
        report = NotificationFanout(mailer).notify_purchase(purchase_notice(payer_email=None))
        self.assertEqual([m.template for m in mailer.sent], ["link_purchase"])
        self.assertEqual(report.skipped, ["purchase_link"])

    def test_buyer_failure_does_not_block_seller(self):
        mailer = FakeMailer(fail_templates={"purchase_link"})
        report = NotificationFanout(mailer).notify_purchase(purchase_notice())
        self.assertEqual(report.failed, ["purchase_link"])
        self.assertEqual(report.sent, ["link_purchase"])

    def test_total_failure_never_raises(self):
        mailer = FakeMailer(fail_templates={"purchase_link", "link_purchase"})
        report = NotificationFanout(mailer).notify_purchase(purchase_notice())
        self.assertEqual(sorted(report.failed), ["link_purchase", "purchase_link"])


class TestWithdrawalFanout(unittest.TestCase):

    def test_cash_out_email(self):
        mailer = FakeMailer()
        notice = WithdrawalNotice("act-2", 12345, "instant", "seller@example.com", "Sam", True)
        report = NotificationFanout(mailer).notify_withdrawal(notice)
        self.assertEqual(report.sent, ["cash_out"])
        self.assertEqual(mailer.sent[0].subject, "Cash Out Successful - $123.45")
        self.assertIn("Instantly", mailer.sent[0].text)

    def test_cash_out_opt_out(self):
        mailer = FakeMailer()
        notice = WithdrawalNotice("act-2", 12345, "standard", "seller@example.com", "Sam", False)
        report = NotificationFanout(mailer).notify_withdrawal(notice)
        self.assertEqual(mailer.sent, [])
        self.assertEqual(report.skipped, ["cash_out"])


class FakeMessage:

    def __init__(self, value, topic="ledger_events", partition=0, offset=0):
        self._value = value
        self._topic = topic
        self._partition = partition
        self._offset = offset

    def value(self):
        return self._value

    def topic(self):
        return self._topic

    def partition(self):
        return self._partition

    def offset(self):
        return self._offset


class FakeConsumer:

    def __init__(self):
        self.commits = []
        self.seeks = []

    def commit(self, msg):
        self.commits.append(msg)

    def seek(self, tp):
        self.seeks.append((tp.topic, tp.partition, tp.offset))


class TestLedgerEventConsumer(unittest.TestCase):

    def setUp(self):
        self.db = TempLedger()
        self.db.add_seller(funds=5000, notify_purchases=False)
        self.db.add_content(url="my-guide", name="My Guide")
        self.ledger = LedgerWriter(self.db.sessions)
        self.mailer = FakeMailer()
        self.fanout = NotificationFanout(self.mailer)
        self.dedup = RedisClient(FakeRedis())

    def tearDown(self):
        self.db.close()

    def test_purchase_event_notifies_once(self):
        recorded = self.ledger.record_purchase("content-1", 2000, "pi_1", payer_email="buyer@example.com")
        evt = LedgerEvent(type="PurchaseRecorded", activity_id=recorded.record.id, seller_id="seller-1",
                          content_id="content-1", amount_in_cents=2000)

        self.assertEqual(handle_event(evt, self.fanout, self.dedup, self.db.sessions), "notified")
        self.assertEqual(handle_event(evt, self.fanout, self.dedup, self.db.sessions), "duplicate")
        # seller opted out of sale emails
        self.assertEqual([m.to for m in self.mailer.sent], ["buyer@example.com"])

    def test_withdrawal_event(self):
        record = self.ledger.record_withdrawal("seller-1", 1000, "standard")
        evt = LedgerEvent(type="WithdrawalRecorded", activity_id=record.id, seller_id="seller-1",
                          amount_in_cents=1000)
        self.assertEqual(handle_event(evt, self.fanout, self.dedup, self.db.sessions), "notified")
        self.assertEqual(self.mailer.sent[0].template, "cash_out")

    def test_missing_row(self):
        evt = LedgerEvent(type="PurchaseRecorded", activity_id="nope", seller_id="seller-1", amount_in_cents=1)
        self.assertEqual(handle_event(evt, self.fanout, self.dedup, self.db.sessions), "missing")
        self.assertEqual(self.mailer.sent, [])

    def test_failed_event_is_rewound_and_redelivered(self):
        recorded = self.ledger.record_purchase("content-1", 2000, "pi_1", payer_email="buyer@example.com")
        evt = LedgerEvent(type="PurchaseRecorded", activity_id=recorded.record.id, seller_id="seller-1",
                          content_id="content-1", amount_in_cents=2000)
        msg = FakeMessage(evt.model_dump_json().encode("utf-8"), offset=7)
        consumer = FakeConsumer()

        def broken_sessions():
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        self.assertFalse(process_message(consumer, msg, self.fanout, self.dedup, broken_sessions))
        self.assertEqual(consumer.commits, [])
        self.assertEqual(consumer.seeks, [("ledger_events", 0, 7)])
        self.assertEqual(self.mailer.sent, [])

        self.assertTrue(process_message(consumer, msg, self.fanout, self.dedup, self.db.sessions))
        self.assertEqual(consumer.commits, [msg])
        self.assertEqual([m.to for m in self.mailer.sent], ["buyer@example.com"])

    def test_unreadable_event_committed_and_dropped(self):
        msg = FakeMessage(b"not json")
        consumer = FakeConsumer()
        self.assertTrue(process_message(consumer, msg, self.fanout, self.dedup, self.db.sessions))
        self.assertEqual(consumer.commits, [msg])
        self.assertEqual(consumer.seeks, [])

    def test_notice_loaders(self):
        recorded = self.ledger.record_purchase("content-1", 2000, "pi_1", payer_email="buyer@example.com")
        with self.db.sessions() as s:
            notice = load_purchase_notice(s, recorded.record.id)
            self.assertEqual(notice.content_url, "my-guide")
            self.assertFalse(notice.notify_seller)
            self.assertIsNone(load_withdrawal_notice(s, recorded.record.id))


class FakeResponse:

    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body or {}
        self.text = str(self._body)

    def json(self):
        return self._body


class FakeSession:

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append((url, json, headers))
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestResendMailer(unittest.TestCase):

    def message(self) -> EmailMessage:
        return build_message("buyer@example.com", "purchase_link", {"content_url": "x", "content_name": "X"})

    def mailer(self, session, api_key="re_test"):
        return ResendMailer(api_key=api_key, api_url="https://mail.test/emails", from_email="Test <t@x.io>",
                            session=session, retry_config=RetryConfig(max_attempts=2, base_delay=0, jitter=False))

    def test_sends_payload(self):
        session = FakeSession(FakeResponse(200, {"id": "email_1"}))
        self.assertEqual(self.mailer(session).send(self.message()), "email_1")
        url, payload, headers = session.calls[0]
        self.assertEqual(payload["to"], ["buyer@example.com"])
        self.assertEqual(payload["subject"], "Your Purchase Link - X")
        self.assertEqual(headers["Authorization"], "Bearer re_test")

    def test_retries_transient_errors(self):
        session = FakeSession(requests.ConnectionError("reset"), FakeResponse(200, {"id": "email_2"}))
        self.assertEqual(self.mailer(session).send(self.message()), "email_2")
        self.assertEqual(len(session.calls), 2)

    def test_gives_up_after_retries(self):
        session = FakeSession(FakeResponse(503), FakeResponse(503))
        with self.assertRaises(NotificationDeliveryFailed):
            self.mailer(session).send(self.message())

    def test_rejected_message_not_retried(self):
        session = FakeSession(FakeResponse(422, {"message": "bad address"}))
        with self.assertRaises(NotificationDeliveryFailed):
            self.mailer(session).send(self.message())
        self.assertEqual(len(session.calls), 1)

    def test_rejection_after_transient_error_stops_retrying(self):
        session = FakeSession(FakeResponse(429), FakeResponse(400, {"message": "invalid from"}))
        mailer = ResendMailer(api_key="re_test", api_url="https://mail.test/emails", session=session,
                              retry_config=RetryConfig(max_attempts=5, base_delay=0, jitter=False))
        with self.assertRaises(NotificationDeliveryFailed):
            mailer.send(self.message())
        self.assertEqual(len(session.calls), 2)

    def test_missing_api_key(self):
        with self.assertRaises(NotificationDeliveryFailed):
            self.mailer(FakeSession(), api_key="").send(self.message())


if __name__ == "__main__":
    unittest.main()
