import os
import sys
import tempfile
import threading
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure project root is importable in local and CI runs.
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Force test config before importing app modules.
TEST_DB_PATH = Path(tempfile.gettempdir()) / "cycle_trader_integration_test.db"
if TEST_DB_PATH.exists():
    TEST_DB_PATH.unlink()

os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["TELEGRAM_BOT_TOKEN"] = ""

from apps.api.app.main import app
from apps.api.app.core.errors import GatewayError
from apps.api.app.core.security import create_access_token
from apps.api.app.core.time import utc_now
from apps.api.app.db.session import Base, SessionLocal, engine
from apps.api.app.models.signal import Signal
from apps.api.app.models.user import User
from apps.api.app.schemas.portfolio import Holding, PortfolioSnapshot
from apps.api.app.services.credentials import connect_exchange
from apps.api.app.services.portfolio import save_snapshot
from apps.worker.app.engine.bootstrap import build_runtime
from apps.worker.app.engine.gateway import ExchangeGateway, TradeResult
from apps.worker.app.engine.notifier import FanoutChannel, InboxChannel, NotificationChannel


CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


class FakeGateway(ExchangeGateway):
    """In-memory exchange: fills every order at the configured price."""

    def __init__(self):
        self.prices: dict[str, Decimal] = {}
        self.snapshots: dict[str, PortfolioSnapshot] = {}
        self.orders: list[tuple] = []
        self.trade_error = None
        self.snapshot_error = None
        # overrides the reported fill price, e.g. 0 for an exchange that omits it
        self.fill_price = None
        # called as on_trade(user_id, symbol, side, quantity) before the order fills
        self.on_trade = None
        self._lock = threading.Lock()

    def get_price(self, user_id, symbol):
        if symbol not in self.prices:
            raise GatewayError("INVALID_SYMBOL", f"Unknown symbol {symbol}")
        return self.prices[symbol]

    def execute_trade(self, user_id, symbol, side, quantity):
        if self.on_trade is not None:
            self.on_trade(user_id, symbol, side, quantity)
        if self.trade_error is not None:
            raise self.trade_error
        with self._lock:
            self.orders.append((user_id, symbol, side, quantity))
            order_no = len(self.orders)
        return TradeResult(
            order_id=f"order-{order_no}",
            price=self.fill_price if self.fill_price is not None else self.prices.get(symbol, Decimal("0")),
            status="FILLED",
            timestamp=utc_now(),
            quantity=quantity,
        )

    def get_portfolio_snapshot(self, user_id):
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return self.snapshots.get(user_id, PortfolioSnapshot())


class RecordingChannel(NotificationChannel):
    def __init__(self):
        self.delivered: list[tuple[str, str, dict]] = []
        self._lock = threading.Lock()

    def deliver(self, user_id, message, metadata=None):
        with self._lock:
            self.delivered.append((user_id, message, metadata or {}))
        return True

    def of_type(self, notification_type: str, user_id=None):
        return [
            d for d in self.delivered
            if d[2].get("type") == notification_type and (user_id is None or d[0] == user_id)
        ]


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def channel():
    return RecordingChannel()


@pytest.fixture()
def runtime(gateway, channel):
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return build_runtime(
        SessionLocal,
        gateway=gateway,
        channel=FanoutChannel([InboxChannel(SessionLocal), channel]),
    )


@pytest.fixture()
def db(runtime):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(runtime):
    app.state.runtime = runtime
    with TestClient(app) as tc:
        yield tc
    app.state.runtime = None


@pytest.fixture()
def make_user(db):
    def _make_user(
        risk_level="medium",
        exchange="BINANCE",
        auto_trade_enabled=True,
        total_value=None,
        holdings=(),
        telegram_id=None,
    ) -> str:
        user = User(
            risk_level=risk_level,
            auto_trade_enabled=auto_trade_enabled,
            telegram_id=telegram_id,
            username=f"trader-{risk_level}",
        )
        db.add(user)
        db.flush()
        if exchange:
            connect_exchange(db, user, exchange, "test-key", "test-secret")
        if total_value is not None or holdings:
            save_snapshot(
                db,
                user.id,
                PortfolioSnapshot(
                    total_value=Decimal(str(total_value or 0)),
                    free_capital=Decimal(str(total_value or 0)),
                    holdings=[Holding(token=t, amount=Decimal(str(a))) for t, a in holdings],
                ),
            )
        db.commit()
        return user.id

    return _make_user


@pytest.fixture()
def make_signal(db):
    def _make_signal(
        type="BUY",
        token="ETH",
        price="3500",
        risk_level="medium",
        expires_in=timedelta(seconds=-1),
        age=timedelta(minutes=30),
    ) -> str:
        now = utc_now()
        signal = Signal(
            type=type,
            token=token,
            price=Decimal(price),
            risk_level=risk_level,
            created_at=now - age,
            expires_at=now + expires_in,
            auto_executed=False,
        )
        db.add(signal)
        db.commit()
        return signal.id

    return _make_signal


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture()
def auth():
    return auth_headers


@pytest.fixture()
def cron_headers():
    return dict(CRON_HEADERS)
