"""
Shared fixtures for the settlement tests: a throwaway SQLite ledger, seed
data, Stripe-style signing and in-memory stand-ins for Kafka, Redis and the
mail API.
"""
import hashlib
import hmac
import json
import os
import shutil
import tempfile
import time
from decimal import Decimal

from ledger_service.db import init_db, make_engine, make_session_factory
from ledger_service.models import Content, Seller

WEBHOOK_SECRET = "whsec_test_secret"


class TempLedger:
    """File-backed SQLite so worker threads share one database."""

    def __init__(self):
        self.tmpdir = tempfile.mkdtemp(prefix="ledger-test-")
        self.engine = make_engine(f"sqlite:///{os.path.join(self.tmpdir, 'ledger.db')}")
        init_db(self.engine)
        self.sessions = make_session_factory(self.engine)

    def close(self):
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def add_seller(self, seller_id="seller-1", funds=0, fee=Decimal("20"), payout_account_id="acct_123",
                   verified=True, email="seller@example.com", first_name="Sam",
                   notify_purchases=True, notify_cash_out=True):
        with self.sessions() as db:
            db.add(Seller(
                id=seller_id,
                email=email,
                first_name=first_name,
                platform_fee_percent=fee,
                available_funds_in_cents=funds,
                payout_account_id=payout_account_id,
                is_identity_verified=verified,
                email_notification_link_purchases=notify_purchases,
                email_notification_cash_out=notify_cash_out,
            ))
            db.commit()
        return seller_id

    def add_content(self, content_id="content-1", seller_id="seller-1", price=2000, url=None, name="Guide"):
        with self.sessions() as db:
            db.add(Content(
                id=content_id,
                seller_id=seller_id,
                url=url or f"link-{content_id}",
                name=name,
                price_in_cents=price,
            ))
            db.commit()
        return content_id

    def seller(self, seller_id="seller-1") -> Seller:
        with self.sessions() as db:
            return db.get(Seller, seller_id)

    def content(self, content_id="content-1") -> Content:
        with self.sessions() as db:
            return db.get(Content, content_id)


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def checkout_event(payment_id="pi_123", content_id="content-1", base_price=2000, fee="20",
                   email="buyer@example.com", event_type="checkout.session.completed",
                   payment_status="paid", event_id="evt_1", **metadata_overrides) -> bytes:
    metadata = {
        "linkId": content_id,
        "linkUrl": f"link-{content_id}",
        "linkName": "Guide",
        "basePriceInCents": str(base_price),
        "platformFeePercent": fee,
        "customerEmail": email,
    }
    metadata.update(metadata_overrides)
    metadata = {k: v for k, v in metadata.items() if v is not None}
    event = {
        "id": event_id,
        "type": event_type,
        "data": {"object": {
            "id": "cs_test_1",
            "object": "checkout.session",
            "payment_intent": payment_id,
            "payment_status": payment_status,
            "metadata": metadata,
        }},
    }
    return json.dumps(event).encode("utf-8")


class FakePublisher:

    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    def publish(self, topic, value, key=None):
        if self.fail:
            raise TimeoutError("broker unavailable")
        self.messages.append((topic, json.loads(value), key))


class FakeRedis:
    """Enough of redis-py for RedisClient.claim_once/release."""

    def __init__(self):
        self.store = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def delete(self, key):
        self.store.pop(key, None)

    def ping(self):
        return True


class FakeMailer:

    def __init__(self, fail_templates=()):
        self.fail_templates = set(fail_templates)
        self.sent = []

    def send(self, message):
        if message.template in self.fail_templates:
            raise RuntimeError(f"mail API down for {message.template}")
        self.sent.append(message)
        return f"msg_{len(self.sent)}"
