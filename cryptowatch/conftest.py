# cryptowatch/conftest.py
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest

# Must be set before cryptowatch.core.config builds its settings object
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from cryptowatch.core.config import settings
from cryptowatch.core.database import init_engine, create_all_tables, dispose_engine
from cryptowatch.features.billing.provider import (
    ChainTransfer,
    CheckoutSession,
    GatewaySubscription,
)

TEST_JWT_SECRET = "test-jwt-secret"
BASE_DEPOSIT = "0x1111111111111111111111111111111111111111"
SOLANA_DEPOSIT = "CwDeposit1111111111111111111111111111111111"


@pytest.fixture(autouse=True)
def db():
    """Fresh in-memory database per test."""
    engine = init_engine("sqlite://")
    create_all_tables()
    yield engine
    dispose_engine()


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def crypto_settings(monkeypatch):
    """Enable crypto payments with known deposit addresses."""
    monkeypatch.setattr(settings, "SUPPORT_CRYPTO_PAYMENT", True)
    monkeypatch.setattr(settings, "BASE_WALLET_ADDRESS", BASE_DEPOSIT)
    monkeypatch.setattr(settings, "SOLANA_WALLET_ADDRESS", SOLANA_DEPOSIT)
    monkeypatch.setattr(settings, "WALLET_QUOTE_TTL_MINUTES", 30)
    monkeypatch.setattr(settings, "AMOUNT_TOLERANCE", 0.01)
    return settings


@pytest.fixture
def auth_secret(monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "AUTH_JWT_ALGORITHMS", "HS256")
    return TEST_JWT_SECRET


def make_token(user_id: str, secret: str = TEST_JWT_SECRET, expires_in: int = 3600, **claims) -> str:
    payload = {"sub": user_id, "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in), **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_headers(auth_secret):
    def _headers(user_id: str = "user_alice", **claims):
        return {"Authorization": f"Bearer {make_token(user_id, **claims)}"}
    return _headers


class FakeChain:
    """ChainReader backed by a dict of (network, tx_hash) -> ChainTransfer."""

    def __init__(self):
        self.transfers = {}
        self.lookups = []

    def add(self, network: str, tx_hash: str, *, to_address: str, amount: str, asset: str = "USDC",
            succeeded: bool = True, confirmed: bool = True, block_time=None) -> ChainTransfer:
        transfer = ChainTransfer(
            tx_hash=tx_hash,
            network=network,
            to_address=to_address,
            amount=Decimal(amount),
            asset=asset,
            succeeded=succeeded,
            confirmed=confirmed,
            block_time=block_time,
        )
        self.transfers[(network, tx_hash)] = transfer
        return transfer

    def get_transfer(self, network, tx_hash):
        self.lookups.append((network, tx_hash))
        return self.transfers.get((network, tx_hash))


class FakeCardGateway:
    """CardGateway that records calls instead of talking to Stripe."""

    def __init__(self):
        self.customers = []
        self.sessions = []
        self.cancelled = []
        self.subscriptions = {}

    def create_customer(self, user_id, email=None):
        self.customers.append(user_id)
        return f"cus_{user_id}"

    def create_checkout_session(self, customer_id, plan, user_id):
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append((customer_id, plan.plan_id, user_id))
        return CheckoutSession(session_id=session_id, url=f"https://checkout.example/{session_id}")

    def retrieve_subscription(self, subscription_id):
        if subscription_id in self.subscriptions:
            return self.subscriptions[subscription_id]
        return GatewaySubscription(
            subscription_id=subscription_id,
            status="active",
            current_period_start=None,
            current_period_end=None,
        )

    def cancel_subscription(self, subscription_id):
        self.cancelled.append(subscription_id)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, user_id, event, payload):
        self.sent.append((user_id, event, payload))

    def events(self):
        return [e for _, e, _ in self.sent]


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def card_gateway():
    return FakeCardGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()
