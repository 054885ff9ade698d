import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Callable, Mapping, Optional

from pydantic import BaseModel

from apps.api.app.core.errors import GatewayError
from apps.api.app.schemas.portfolio import PortfolioSnapshot

logger = logging.getLogger(__name__)


class TradeResult(BaseModel):
    order_id: str
    price: Decimal
    status: str
    timestamp: datetime
    quantity: Optional[Decimal] = None


def symbol_for(token: str, quote_asset: str = "USDT") -> str:
    """BTC -> BTCUSDT; already-quoted symbols pass through."""
    token = token.upper()
    quote_asset = quote_asset.upper()
    if token.endswith(quote_asset) and token != quote_asset:
        return token
    return f"{token}{quote_asset}"


class ExchangeGateway(ABC):
    """Per-user access to one exchange. Every failure surfaces as GatewayError."""

    @abstractmethod
    def get_price(self, user_id: str, symbol: str) -> Decimal:
        ...

    @abstractmethod
    def execute_trade(self, user_id: str, symbol: str, side: str, quantity: Decimal) -> TradeResult:
        ...

    @abstractmethod
    def get_portfolio_snapshot(self, user_id: str) -> PortfolioSnapshot:
        ...


class ExchangeRouter(ExchangeGateway):
    def __init__(
        self,
        gateways: Mapping[str, ExchangeGateway],
        exchange_for_user: Callable[[str], Optional[str]],
    ):
        self._gateways = {tag.upper(): gw for tag, gw in gateways.items()}
        self._exchange_for_user = exchange_for_user

    def _gateway(self, user_id: str) -> ExchangeGateway:
        tag = self._exchange_for_user(user_id)
        if not tag:
            raise GatewayError("NOT_CONNECTED", f"User {user_id} has no exchange connected")
        gateway = self._gateways.get(tag.upper())
        if gateway is None:
            raise GatewayError("UNSUPPORTED_EXCHANGE", f"Exchange {tag} is not supported")
        return gateway

    def get_price(self, user_id: str, symbol: str) -> Decimal:
        return self._gateway(user_id).get_price(user_id, symbol)

    def execute_trade(self, user_id: str, symbol: str, side: str, quantity: Decimal) -> TradeResult:
        return self._gateway(user_id).execute_trade(user_id, symbol, side, quantity)

    def get_portfolio_snapshot(self, user_id: str) -> PortfolioSnapshot:
        return self._gateway(user_id).get_portfolio_snapshot(user_id)
