"""
Outbox relay tests
"""
import unittest

from confluent_kafka import KafkaException
from sqlalchemy import select

from common.kafka import KafkaPublisher
from common.retry import RetryConfig
from ledger_service.ledger import LedgerWriter
from ledger_service.models import Outbox
from ledger_service.outbox_worker import MAX_ATTEMPTS, relay_once
from support import FakePublisher, TempLedger

NO_RETRY = RetryConfig(max_attempts=1)


class TestRelay(unittest.TestCase):

    def setUp(self):
        self.db = TempLedger()
        self.db.add_seller(funds=10000)
        self.db.add_content()
        self.ledger = LedgerWriter(self.db.sessions)

    def tearDown(self):
        self.db.close()

    def rows(self):
        with self.db.sessions() as s:
            return s.execute(select(Outbox).order_by(Outbox.id)).scalars().all()

    def test_publishes_committed_events_in_order(self):
        purchase = self.ledger.record_purchase("content-1", 2000, "pi_1")
        withdrawal = self.ledger.record_withdrawal("seller-1", 500)
        publisher = FakePublisher()

        sent = relay_once(self.db.sessions, publisher, retry_config=NO_RETRY)

        self.assertEqual(sent, 2)
        topics = {m[0] for m in publisher.messages}
        self.assertEqual(topics, {"ledger_events"})
        events = [m[1] for m in publisher.messages]
        self.assertEqual([e["type"] for e in events], ["PurchaseRecorded", "WithdrawalRecorded"])
        self.assertEqual(events[0]["activity_id"], purchase.record.id)
        self.assertEqual(events[0]["amount_in_cents"], 2000)
        self.assertEqual(events[1]["activity_id"], withdrawal.id)
        self.assertEqual(publisher.messages[0][2], purchase.record.id.encode("utf-8"))
        self.assertEqual({r.status for r in self.rows()}, {"sent"})

    def test_sent_rows_are_not_republished(self):
        self.ledger.record_purchase("content-1", 2000, "pi_1")
        publisher = FakePublisher()
        relay_once(self.db.sessions, publisher, retry_config=NO_RETRY)
        self.assertEqual(relay_once(self.db.sessions, publisher, retry_config=NO_RETRY), 0)
        self.assertEqual(len(publisher.messages), 1)

    def test_failed_publish_is_retried_later(self):
        self.ledger.record_purchase("content-1", 2000, "pi_1")
        broken = FakePublisher(fail=True)

        self.assertEqual(relay_once(self.db.sessions, broken, retry_config=NO_RETRY), 0)
        row = self.rows()[0]
        self.assertEqual(row.status, "failed")
        self.assertEqual(row.attempts, 1)

        healthy = FakePublisher()
        self.assertEqual(relay_once(self.db.sessions, healthy, retry_config=NO_RETRY), 1)
        self.assertEqual(self.rows()[0].status, "sent")

    def test_gives_up_after_max_attempts(self):
        self.ledger.record_purchase("content-1", 2000, "pi_1")
        broken = FakePublisher(fail=True)
        for _ in range(MAX_ATTEMPTS + 2):
            relay_once(self.db.sessions, broken, retry_config=NO_RETRY)
        self.assertEqual(self.rows()[0].attempts, MAX_ATTEMPTS)

    def test_duplicate_purchase_adds_no_event(self):
        self.ledger.record_purchase("content-1", 2000, "pi_1")
        self.ledger.record_purchase("content-1", 2000, "pi_1")
        self.assertEqual(len(self.rows()), 1)



class FakeProducer:

    def __init__(self, error=None, stuck=0):
        self.error = error
        self.stuck = stuck
        self.pending = []

    def produce(self, topic, value=None, key=None, on_delivery=None):
        self.pending.append((topic, value, key, on_delivery))

    def flush(self, timeout=None):
        for topic, value, key, on_delivery in self.pending:
            on_delivery(self.error, None)
        self.pending = []
        return self.stuck


class TestKafkaPublisher(unittest.TestCase):

    def test_acknowledged_publish(self):
        KafkaPublisher(FakeProducer()).publish("ledger_events", b"{}", key=b"act-1")

    def test_delivery_error_raises(self):
        publisher = KafkaPublisher(FakeProducer(error="Broker: Message size too large"))
        with self.assertRaises(KafkaException):
            publisher.publish("ledger_events", b"{}")

    def test_unflushed_message_raises(self):
        with self.assertRaises(TimeoutError):
            KafkaPublisher(FakeProducer(stuck=1)).publish("ledger_events", b"{}")

    def test_rejected_row_stays_unsent(self):
        db = TempLedger()
        self.addCleanup(db.close)
        db.add_seller()
        db.add_content()
        LedgerWriter(db.sessions).record_purchase("content-1", 2000, "pi_1")

        publisher = KafkaPublisher(FakeProducer(error="Broker: Not enough in-sync replicas"))
        self.assertEqual(relay_once(db.sessions, publisher, retry_config=NO_RETRY), 0)
        with db.sessions() as s:
            self.assertEqual(s.execute(select(Outbox)).scalar_one().status, "failed")

if __name__ == "__main__":
    unittest.main()
