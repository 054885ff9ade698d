import hashlib
import hmac
from decimal import Decimal
from urllib.parse import parse_qsl, urlsplit

import pytest
import requests

from apps.api.app.core.errors import GatewayError
from apps.worker.app.engine.binance_client import BinanceGateway
from apps.worker.app.engine.btcc_client import BtccGateway
from apps.worker.app.engine.gateway import ExchangeRouter, symbol_for
from apps.worker.app.engine.notifier import FanoutChannel, NotificationChannel


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "headers": headers or {}, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _creds(user_id):
    return {"api_key": "key-123", "api_secret": "secret-456"} if user_id == "u1" else None


def _gateway(cls=BinanceGateway, *responses):
    session = FakeSession(*responses)
    return cls("https://exchange.test/", _creds, timeout=3, session=session), session


def test_symbol_for():
    assert symbol_for("btc") == "BTCUSDT"
    assert symbol_for("ETHUSDT") == "ETHUSDT"
    assert symbol_for("ETH", "USDC") == "ETHUSDC"


def test_market_order_is_signed_and_averages_fills():
    gw, session = _gateway(
        BinanceGateway,
        FakeResponse(
            payload={
                "orderId": 42,
                "status": "FILLED",
                "executedQty": "4.00000000",
                "fills": [{"price": "100", "qty": "1"}, {"price": "110", "qty": "3"}],
            }
        ),
    )

    result = gw.execute_trade("u1", "btcusdt", "buy", Decimal("4"))

    assert result.order_id == "42"
    assert result.price == Decimal("107.5")
    assert result.quantity == Decimal("4.00000000")

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["headers"] == {"X-MBX-APIKEY": "key-123"}
    assert call["timeout"] == 3
    parts = urlsplit(call["url"])
    assert parts.path == "/api/v3/order"
    query, signature = parts.query.rsplit("&signature=", 1)
    expected = hmac.new(b"secret-456", query.encode("utf-8"), hashlib.sha256).hexdigest()
    assert signature == expected
    params = dict(parse_qsl(query))
    assert params["symbol"] == "BTCUSDT"
    assert params["side"] == "BUY"
    assert params["type"] == "MARKET"
    assert "timestamp" in params


def test_exchange_rejection_maps_to_gateway_error():
    gw, _ = _gateway(
        BinanceGateway,
        FakeResponse(status_code=400, payload={"code": -2010, "msg": "Account has insufficient balance"}),
    )

    with pytest.raises(GatewayError) as err:
        gw.execute_trade("u1", "BTCUSDT", "BUY", Decimal("1"))

    assert err.value.code == "-2010"
    assert "insufficient balance" in err.value.message


def test_rejected_order_status_is_an_error():
    gw, _ = _gateway(BinanceGateway, FakeResponse(payload={"orderId": 1, "status": "REJECTED"}))

    with pytest.raises(GatewayError) as err:
        gw.execute_trade("u1", "BTCUSDT", "SELL", Decimal("1"))
    assert err.value.code == "REJECTED"


@pytest.mark.parametrize(
    "payload",
    [
        {"orderId": 7, "status": "NEW", "executedQty": "0.00000000", "fills": []},
        {"orderId": 8, "status": "FILLED", "executedQty": "0", "fills": []},
        {"orderId": 9, "status": "PENDING_NEW", "executedQty": "1.0", "fills": [{"price": "100", "qty": "1"}]},
    ],
)
def test_unfilled_order_is_not_reported_as_a_fill(payload):
    gw, _ = _gateway(BinanceGateway, FakeResponse(payload=payload))

    with pytest.raises(GatewayError) as err:
        gw.execute_trade("u1", "BTCUSDT", "BUY", Decimal("1"))
    assert err.value.code == "NOT_FILLED"


def test_partial_fill_reports_executed_quantity():
    gw, _ = _gateway(
        BinanceGateway,
        FakeResponse(
            payload={
                "orderId": 11,
                "status": "PARTIALLY_FILLED",
                "executedQty": "0.25",
                "cummulativeQuoteQty": "25000",
                "fills": [],
            }
        ),
    )

    result = gw.execute_trade("u1", "BTCUSDT", "BUY", Decimal("1"))

    assert result.quantity == Decimal("0.25")
    assert result.price == Decimal("100000")
    assert result.status == "PARTIALLY_FILLED"


def test_timeout_and_network_errors():
    gw, _ = _gateway(BinanceGateway, requests.Timeout("slow"), requests.ConnectionError("down"))

    with pytest.raises(GatewayError) as timeout:
        gw.get_price("u1", "BTCUSDT")
    assert timeout.value.code == "TIMEOUT"

    with pytest.raises(GatewayError) as network:
        gw.get_price("u1", "BTCUSDT")
    assert network.value.code == "NETWORK"


def test_missing_credentials():
    gw, session = _gateway(BinanceGateway)

    with pytest.raises(GatewayError) as err:
        gw.execute_trade("nobody", "BTCUSDT", "BUY", Decimal("1"))
    assert err.value.code == "AUTH"
    assert session.calls == []


def test_portfolio_snapshot_from_balances():
    gw, session = _gateway(
        BtccGateway,
        FakeResponse(
            payload={
                "balances": [
                    {"asset": "USDT", "free": "1000", "locked": "0"},
                    {"asset": "BTC", "free": "0.4", "locked": "0.1"},
                    {"asset": "ETH", "free": "0", "locked": "0"},
                ]
            }
        ),
        FakeResponse(payload={"symbol": "BTCUSDT", "price": "50000"}),
    )

    snapshot = gw.get_portfolio_snapshot("u1")

    assert snapshot.free_capital == Decimal("1000")
    assert snapshot.allocated_capital == Decimal("25000.0")
    assert snapshot.total_value == Decimal("26000.0")
    assert [h.token for h in snapshot.holdings] == ["BTC"]
    holding = snapshot.holdings[0]
    assert holding.pnl_percentage == Decimal("0")
    assert holding.pnl == holding.value
    assert urlsplit(session.calls[0]["url"]).path == "/api/v1/account"
    assert urlsplit(session.calls[1]["url"]).path == "/api/v1/ticker/price"
    assert "signature" not in session.calls[1]["url"]


class _Tagged:
    def __init__(self, tag):
        self.tag = tag

    def get_price(self, user_id, symbol):
        return self.tag


def test_router_dispatches_on_user_exchange():
    exchanges = {"u1": "binance", "u2": "BTCC", "u3": None, "u4": "KRAKEN"}
    router = ExchangeRouter(
        {"BINANCE": _Tagged("binance"), "BTCC": _Tagged("btcc")},
        exchange_for_user=exchanges.get,
    )

    assert router.get_price("u1", "BTCUSDT") == "binance"
    assert router.get_price("u2", "BTCUSDT") == "btcc"
    with pytest.raises(GatewayError) as missing:
        router.get_price("u3", "BTCUSDT")
    assert missing.value.code == "NOT_CONNECTED"
    with pytest.raises(GatewayError) as unsupported:
        router.get_price("u4", "BTCUSDT")
    assert unsupported.value.code == "UNSUPPORTED_EXCHANGE"


class _Channel(NotificationChannel):
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = 0

    def deliver(self, user_id, message, metadata=None):
        self.calls += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def test_fanout_succeeds_if_any_channel_does():
    failing, ok = _Channel(RuntimeError("telegram down")), _Channel(True)
    assert FanoutChannel([failing, ok]).deliver("u1", "hello") is True
    assert failing.calls == ok.calls == 1

    assert FanoutChannel([_Channel(False), _Channel(RuntimeError("x"))]).deliver("u1", "hello") is False
