import hashlib
import hmac
import logging
import time
from decimal import Decimal
from typing import Callable, Iterable, Optional
from urllib.parse import urlencode

import requests

from apps.api.app.core.errors import GatewayError
from apps.api.app.core.time import utc_now
from apps.api.app.schemas.portfolio import Holding, PortfolioSnapshot
from apps.api.app.services.portfolio import ZERO, calculate_holding_pnl, to_decimal
from apps.worker.app.engine.gateway import ExchangeGateway, TradeResult, symbol_for

logger = logging.getLogger(__name__)

CredentialsProvider = Callable[[str], Optional[dict]]

_FAILED_ORDER_STATES = {"REJECTED", "EXPIRED", "CANCELED"}
_FILLED_ORDER_STATES = {"FILLED", "PARTIALLY_FILLED"}


class BinanceGateway(ExchangeGateway):
    """Signed Binance spot REST client.

    Requests are signed with HMAC-SHA256 over the url-encoded query and sent
    with the user's key in ``X-MBX-APIKEY``. Credentials are looked up per
    call so a key rotated by the user is picked up on the next trade.
    """

    name = "BINANCE"
    api_prefix = "/api/v3"

    def __init__(
        self,
        base_url: str,
        credentials_provider: CredentialsProvider,
        timeout: float = 10.0,
        quote_asset: str = "USDT",
        stable_assets: Iterable[str] = ("USDT", "USDC", "BUSD", "DAI"),
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._credentials_provider = credentials_provider
        self.timeout = timeout
        self.quote_asset = quote_asset.upper()
        self.stable_assets = {a.upper() for a in stable_assets}
        self._http = session or requests.Session()

    def _credentials(self, user_id: str) -> dict:
        creds = self._credentials_provider(user_id)
        if not creds or not creds.get("api_key") or not creds.get("api_secret"):
            raise GatewayError("AUTH", f"Missing {self.name} credentials for user {user_id}")
        return creds

    def _request(self, method: str, endpoint: str, params: Optional[dict] = None, *, user_id: str, signed: bool = True):
        params = dict(params or {})
        headers = {}
        url = f"{self.base_url}{self.api_prefix}{endpoint}"

        if signed:
            creds = self._credentials(user_id)
            params["timestamp"] = int(time.time() * 1000)
            query = urlencode(params)
            signature = hmac.new(
                creds["api_secret"].encode("utf-8"),
                query.encode("utf-8"),
                hashlib.sha256,
            ).hexdigest()
            url = f"{url}?{query}&signature={signature}"
            headers["X-MBX-APIKEY"] = creds["api_key"]
        elif params:
            url = f"{url}?{urlencode(params)}"

        # never log the signed url
        logger.debug("%s %s %s%s user=%s", self.name, method, self.api_prefix, endpoint, user_id)
        try:
            response = self._http.request(method, url, headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            raise GatewayError("TIMEOUT", f"{self.name} {endpoint} timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise GatewayError("NETWORK", f"{self.name} {endpoint} failed: {exc}") from exc

        if response.status_code >= 400:
            code, message = str(response.status_code), response.text
            try:
                body = response.json()
                code = str(body.get("code", code))
                message = body.get("msg", message)
            except ValueError:
                pass
            raise GatewayError(code, f"{self.name} error {response.status_code}: {message}")

        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError("BAD_RESPONSE", f"{self.name} returned non-JSON for {endpoint}") from exc

    def get_price(self, user_id: str, symbol: str) -> Decimal:
        data = self._request("GET", "/ticker/price", {"symbol": symbol.upper()}, user_id=user_id, signed=False)
        price = to_decimal(data.get("price"))
        if price <= ZERO:
            raise GatewayError("INVALID_SYMBOL", f"No price for {symbol}")
        return price

    def execute_trade(self, user_id: str, symbol: str, side: str, quantity: Decimal) -> TradeResult:
        params = {
            "symbol": symbol.upper(),
            "side": side.upper(),
            "type": "MARKET",
            "quantity": format(to_decimal(quantity), "f"),
            "newOrderRespType": "FULL",
        }
        data = self._request("POST", "/order", params, user_id=user_id)

        status = str(data.get("status", "UNKNOWN")).upper()
        if status in _FAILED_ORDER_STATES:
            raise GatewayError(status, f"{self.name} order {data.get('orderId')} was {status.lower()}")

        executed_qty = to_decimal(data.get("executedQty"))
        if status not in _FILLED_ORDER_STATES or executed_qty <= ZERO:
            raise GatewayError(
                "NOT_FILLED",
                f"{self.name} order {data.get('orderId')} is {status.lower()} with {executed_qty} executed",
            )

        fills = data.get("fills") or []
        filled_qty = sum((to_decimal(f.get("qty")) for f in fills), ZERO)
        if filled_qty > ZERO:
            # quantity-weighted average across partial fills
            price = sum((to_decimal(f.get("price")) * to_decimal(f.get("qty")) for f in fills), ZERO) / filled_qty
        else:
            price = to_decimal(data.get("cummulativeQuoteQty")) / executed_qty

        logger.info(
            "%s order filled user=%s symbol=%s side=%s qty=%s price=%s status=%s",
            self.name,
            user_id,
            symbol,
            side,
            executed_qty,
            price,
            status,
        )
        return TradeResult(
            order_id=str(data.get("orderId", "")),
            price=price,
            status=status,
            timestamp=utc_now(),
            quantity=executed_qty,
        )

    def get_portfolio_snapshot(self, user_id: str):
        data = self._request("GET", "/account", user_id=user_id)

        free_capital = ZERO
        holdings: list[Holding] = []
        for balance in data.get("balances", []):
            asset = str(balance.get("asset", "")).upper()
            free = to_decimal(balance.get("free"))
            total = free + to_decimal(balance.get("locked"))
            if asset in self.stable_assets:
                free_capital += free
                continue
            if total <= ZERO:
                continue
            current_price = self.get_price(user_id, symbol_for(asset, self.quote_asset))
            # the exchange does not report a cost basis
            holdings.append(calculate_holding_pnl(asset, total, ZERO, current_price))

        allocated = sum((h.value for h in holdings), ZERO)
        return PortfolioSnapshot(
            total_value=allocated + free_capital,
            free_capital=free_capital,
            allocated_capital=allocated,
            holdings=holdings,
            updated_at=utc_now(),
        )
