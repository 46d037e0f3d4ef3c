"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from redemption_engine.db.session import get_db
from redemption_engine.models import (
    Base, DelegationDatum, Network, Price, Product, ProductToken, Subscription, Token, Wallet
)
from redemption_engine.services.redemption_service import RedemptionExecutor, RetryPolicy
from redemption_engine.services.settlement_client import SettlementError


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let SQLAlchemy emit it
@event.listens_for(test_engine, "connect")
def _disable_pysqlite_transaction_handling(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(test_engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TEST_ADMIN_API_KEY = os.environ["ADMIN_API_KEY"]


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


class FakeSettlementClient:
    """Settlement client returning scripted results in order.

    Each response is either a transaction hash or an exception to raise;
    once the script runs out the default hash is returned.
    """

    def __init__(self, responses=None, default="0xabc"):
        self.responses = list(responses or [])
        self.default = default
        self.calls = []

    def redeem(self, serialized_delegation, params):
        self.calls.append((serialized_delegation, params))
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response


class FailingSettlementClient(FakeSettlementClient):
    """Settlement client that always raises the same error"""

    def __init__(self, message):
        super().__init__()
        self.message = message

    def redeem(self, serialized_delegation, params):
        self.calls.append((serialized_delegation, params))
        raise SettlementError(self.message)


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def settlement_client() -> FakeSettlementClient:
    return FakeSettlementClient()


@pytest.fixture
def sleeps():
    """Recorded backoff delays"""
    return []


@pytest.fixture
def make_executor(sleeps):
    """Build an executor that records sleeps instead of waiting and uses no jitter"""
    def _make(client):
        return RedemptionExecutor(
            client,
            policy=RetryPolicy(max_attempts=3, initial_backoff=1.0, max_backoff=10.0),
            sleep=sleeps.append,
            rand=lambda low, high: 1.0
        )
    return _make


@pytest.fixture
def executor(make_executor, settlement_client) -> RedemptionExecutor:
    return make_executor(settlement_client)


@pytest.fixture
def reference_data(db_session: Session):
    """Network, token, merchant wallet, product, product token and delegation shared by subscriptions"""
    network = Network(name="base-sepolia", chain_id=84532)
    wallet = Wallet(workspace_id="ws-1", wallet_address="0xMerchant")
    db_session.add_all([network, wallet])
    db_session.flush()

    token = Token(network_id=network.id, symbol="USDC", contract_address="0xToken", decimals=6)
    product = Product(workspace_id="ws-1", wallet_id=wallet.id, name="Pro plan")
    db_session.add_all([token, product])
    db_session.flush()

    product_token = ProductToken(product_id=product.id, network_id=network.id, token_id=token.id)
    delegation = DelegationDatum(
        delegate="0xDelegate",
        delegator="0xCustomer",
        authority="0xAuthority",
        caveats=[{"enforcer": "0xEnforcer", "terms": "0x01"}],
        salt="0x1234",
        signature="0xsigned"
    )
    db_session.add_all([product_token, delegation])
    db_session.commit()

    return {
        "network": network,
        "wallet": wallet,
        "token": token,
        "product": product,
        "product_token": product_token,
        "delegation": delegation,
    }


@pytest.fixture
def subscription_factory(db_session: Session, reference_data, now):
    """Create a subscription with its own price"""
    def _create(
        price_type="recurring",
        interval_type="daily",
        term_length=0,
        unit_amount=1000,
        total_redemptions=0,
        status="active",
        next_redemption_date=...,
        delegation_id=None,
        deleted_at=None
    ) -> Subscription:
        if next_redemption_date is ...:
            next_redemption_date = now - timedelta(days=1)

        price = Price(
            product_id=reference_data["product"].id,
            type=price_type,
            interval_type=interval_type,
            term_length=term_length,
            unit_amount=unit_amount,
            currency="USD"
        )
        db_session.add(price)
        db_session.flush()

        subscription = Subscription(
            workspace_id="ws-1",
            customer_id="cus-1",
            product_id=reference_data["product"].id,
            price_id=price.id,
            product_token_id=reference_data["product_token"].id,
            delegation_id=delegation_id or reference_data["delegation"].id,
            status=status,
            current_period_start=now - timedelta(days=30),
            current_period_end=now + timedelta(days=30),
            next_redemption_date=next_redemption_date,
            total_redemptions=total_redemptions,
            total_amount_collected=total_redemptions * unit_amount,
            token_amount=unit_amount * 10_000,
            deleted_at=deleted_at
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _create


@pytest.fixture(scope="function")
def client(db_session: Session, settlement_client) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and a scripted settlement client"""
    from redemption_engine.main import app

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.state.settlement_client = settlement_client

    try:
        with patch('redemption_engine.main.init_db'):
            with patch('redemption_engine.main.initialize_otel', return_value=False):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        app.dependency_overrides.clear()
        app.state.settlement_client = None
