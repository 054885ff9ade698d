import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.core.time import utc_now
from apps.api.app.models.cycle import OPEN_STATES, Cycle
from apps.api.app.models.portfolio import Portfolio
from apps.api.app.schemas.portfolio import Holding, PortfolioSnapshot

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value) -> Decimal:
    """Converts exchange/JSON numbers to Decimal without going through binary floats."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {value!r}") from exc


def percentage_change(base: Decimal, current: Decimal) -> Decimal:
    # A zero base (e.g. unknown average price) yields 0, never a division error.
    if base == ZERO:
        return ZERO
    return (current - base) / base * HUNDRED


def calculate_holding_pnl(token: str, amount, average_price, current_price) -> Holding:
    amount = to_decimal(amount)
    average_price = to_decimal(average_price)
    current_price = to_decimal(current_price)

    value = amount * current_price
    pnl = (current_price - average_price) * amount
    return Holding(
        token=token,
        amount=amount,
        average_price=average_price,
        current_price=current_price,
        value=value,
        pnl=pnl,
        pnl_percentage=percentage_change(average_price, current_price),
    )


def find_holding(snapshot: Optional[PortfolioSnapshot], token: str) -> Optional[Holding]:
    if snapshot is None:
        return None
    for holding in snapshot.holdings:
        if holding.token == token:
            return holding
    return None


def get_portfolio(db: Session, user_id: str) -> Optional[Portfolio]:
    return db.execute(select(Portfolio).where(Portfolio.user_id == user_id)).scalar_one_or_none()


def to_snapshot(portfolio: Optional[Portfolio]) -> Optional[PortfolioSnapshot]:
    if portfolio is None:
        return None
    return PortfolioSnapshot(
        total_value=portfolio.total_value,
        free_capital=portfolio.free_capital,
        allocated_capital=portfolio.allocated_capital,
        holdings=json.loads(portfolio.holdings_json or "[]"),
        updated_at=portfolio.updated_at,
    )


def save_snapshot(db: Session, user_id: str, snapshot: PortfolioSnapshot) -> Portfolio:
    holdings_json = json.dumps([h.model_dump(mode="json") for h in snapshot.holdings])
    row = get_portfolio(db, user_id)
    if row is None:
        row = Portfolio(user_id=user_id)
        db.add(row)

    row.total_value = snapshot.total_value
    row.free_capital = snapshot.free_capital
    row.allocated_capital = snapshot.allocated_capital
    row.holdings_json = holdings_json
    row.updated_at = utc_now()
    db.flush()
    return row


def _with_cycle_cost_basis(db: Session, user_id: str, snapshot: PortfolioSnapshot) -> PortfolioSnapshot:
    open_cycles = (
        db.execute(
            select(Cycle).where(Cycle.user_id == user_id, Cycle.state.in_(OPEN_STATES))
        )
        .scalars()
        .all()
    )
    entry_by_token = {c.token: c.entry_price for c in open_cycles}

    holdings = []
    for h in snapshot.holdings:
        average_price = h.average_price
        if average_price == ZERO and h.token in entry_by_token:
            average_price = entry_by_token[h.token]
        holdings.append(calculate_holding_pnl(h.token, h.amount, average_price, h.current_price))
    return snapshot.model_copy(update={"holdings": holdings})


def refresh_portfolio_snapshot(db: Session, user_id: str, gateway) -> PortfolioSnapshot:
    """Pulls a fresh snapshot from the exchange and caches it.

    The exchange rarely knows a cost basis, so holdings without an average
    price borrow the entry price of the user's open cycle for that token.
    Raises whatever the gateway raises; callers decide whether that matters.
    """
    snapshot = gateway.get_portfolio_snapshot(user_id)
    snapshot = _with_cycle_cost_basis(db, user_id, snapshot)
    save_snapshot(db, user_id, snapshot)
    db.commit()
    logger.info(
        "Portfolio refreshed user=%s total_value=%s holdings=%d",
        user_id,
        snapshot.total_value,
        len(snapshot.holdings),
    )
    return snapshot
