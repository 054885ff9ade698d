import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.api.app.core.errors import CycleStateError, PersistenceError
from apps.api.app.core.time import utc_now
from apps.api.app.models.cycle import OPEN_STATES, Cycle, CyclePartialExit
from apps.api.app.models.trade import Trade
from apps.api.app.services.portfolio import ZERO, percentage_change, to_decimal

logger = logging.getLogger(__name__)


def compute_cycle_pnl(entry_price, exit_price, amount) -> tuple[Decimal, Decimal]:
    entry_price = to_decimal(entry_price)
    exit_price = to_decimal(exit_price)
    pnl = (exit_price - entry_price) * to_decimal(amount)
    return pnl, percentage_change(entry_price, exit_price)


class CycleStateMachine:
    def find_open(self, db: Session, user_id: str, token: str) -> Optional[Cycle]:
        return (
            db.execute(
                select(Cycle).where(
                    Cycle.user_id == user_id,
                    Cycle.token == token,
                    Cycle.state.in_(OPEN_STATES),
                )
            )
            .scalars()
            .first()
        )

    def open_on_buy(
        self,
        db: Session,
        user_id: str,
        token: str,
        entry_trade: Optional[Trade],
        entry_price,
        amount=None,
        state: str = "entry",
    ) -> Cycle:
        existing = self.find_open(db, user_id, token)
        if existing is not None:
            logger.info("Open cycle already exists user=%s token=%s cycle=%s", user_id, token, existing.id)
            return existing

        if state not in OPEN_STATES:
            raise CycleStateError(f"A cycle cannot start in state {state}")
        if amount is None:
            if entry_trade is None:
                raise ValueError("amount is required when there is no entry trade")
            amount = entry_trade.amount

        cycle = Cycle(
            user_id=user_id,
            token=token,
            state=state,
            entry_trade_id=entry_trade.id if entry_trade is not None else None,
            entry_price=to_decimal(entry_price),
            entry_amount=to_decimal(amount),
        )
        db.add(cycle)
        try:
            db.flush()
        except IntegrityError:
            # Lost the race against another stream for the same (user, token).
            db.rollback()
            winner = self.find_open(db, user_id, token)
            if winner is None:
                raise PersistenceError(f"Could not open cycle for {user_id}/{token}")
            logger.warning("Concurrent open for user=%s token=%s, keeping cycle=%s", user_id, token, winner.id)
            return winner

        logger.info("Cycle opened user=%s token=%s cycle=%s state=%s", user_id, token, cycle.id, state)
        return cycle

    def mark_hold(self, db: Session, cycle: Cycle) -> Cycle:
        if cycle.state == "hold":
            return cycle
        if cycle.state != "entry":
            raise CycleStateError(f"Cycle {cycle.id} is {cycle.state}, cannot move to hold")
        cycle.state = "hold"
        cycle.updated_at = utc_now()
        db.flush()
        return cycle

    def close_on_full_sell(
        self,
        db: Session,
        cycle: Cycle,
        exit_trade: Optional[Trade],
        exit_price,
        amount,
    ) -> Cycle:
        if cycle.state not in OPEN_STATES:
            raise CycleStateError(f"Cycle {cycle.id} is {cycle.state}, cannot close")

        exit_price = to_decimal(exit_price)
        pnl, pnl_percentage = compute_cycle_pnl(cycle.entry_price, exit_price, amount)

        # compare-and-set on the open state so two closers cannot both win
        result = db.execute(
            update(Cycle)
            .where(Cycle.id == cycle.id, Cycle.state.in_(OPEN_STATES))
            .values(
                state="exit",
                exit_price=exit_price,
                exit_trade_id=exit_trade.id if exit_trade is not None else None,
                pnl=pnl,
                pnl_percentage=pnl_percentage,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CycleStateError(f"Cycle {cycle.id} was closed concurrently")

        db.refresh(cycle)
        logger.info(
            "Cycle closed user=%s token=%s cycle=%s pnl=%s pnl_pct=%s",
            cycle.user_id,
            cycle.token,
            cycle.id,
            pnl,
            pnl_percentage,
        )
        return cycle

    def record_partial_sell(
        self,
        db: Session,
        cycle: Cycle,
        trade: Trade,
        percentage,
        price,
        amount,
    ) -> CyclePartialExit:
        if cycle.state not in OPEN_STATES:
            raise CycleStateError(f"Cycle {cycle.id} is {cycle.state}, cannot sell")
        percentage = to_decimal(percentage)
        if not (ZERO < percentage <= Decimal("100")):
            raise ValueError("percentage must be in (0, 100]")

        partial = CyclePartialExit(
            trade_id=trade.id,
            percentage=percentage,
            price=to_decimal(price),
            amount=to_decimal(amount),
            timestamp=utc_now(),
        )
        cycle.partial_exits.append(partial)
        cycle.updated_at = utc_now()
        db.flush()
        return partial

    def remaining_amount(self, cycle: Cycle) -> Decimal:
        sold = sum((to_decimal(p.amount) for p in cycle.partial_exits), ZERO)
        remaining = to_decimal(cycle.entry_amount) - sold
        return remaining if remaining > ZERO else ZERO


def realized_cycle_stats(db: Session, user_id: str) -> dict:
    """Realized PnL over a user's cycles, partial exits of open cycles included."""
    cycles = db.execute(select(Cycle).where(Cycle.user_id == user_id)).scalars().all()

    realized = ZERO
    open_count = closed_count = winners = 0
    for cycle in cycles:
        cycle_pnl = sum(
            (compute_cycle_pnl(cycle.entry_price, p.price, p.amount)[0] for p in cycle.partial_exits),
            ZERO,
        )
        if cycle.state in OPEN_STATES:
            open_count += 1
        else:
            closed_count += 1
            cycle_pnl += to_decimal(cycle.pnl)
            if cycle_pnl > ZERO:
                winners += 1
        realized += cycle_pnl

    return {
        "realized_pnl": realized,
        "open_cycles": open_count,
        "closed_cycles": closed_count,
        "winning_cycles": winners,
    }
