import logging
import threading
import time
import weakref
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from apps.api.app.core.errors import (
    ClaimConflict,
    CycleStateError,
    EngineError,
    GatewayError,
    IneligibleUser,
    NoOpenCycle,
    OpenCycleExists,
    PersistenceError,
    RepositoryUnavailable,
    SizingError,
)
from apps.api.app.core.time import utc_now
from apps.api.app.models.cycle import OPEN_STATES, Cycle
from apps.api.app.models.signal import Signal
from apps.api.app.models.trade import Trade
from apps.api.app.schemas.execution import ExecutionDetail, NotifierSummary, RunSummary, SignalNotifyResult
from apps.api.app.services.activity_log import record_activity
from apps.api.app.services.cycles import CycleStateMachine
from apps.api.app.services.eligibility import EligibilityFilter
from apps.api.app.services.notifications import NotificationService
from apps.api.app.services.portfolio import HUNDRED, ZERO, get_portfolio, refresh_portfolio_snapshot, to_decimal
from apps.api.app.services.signals import SignalRepository
from apps.worker.app.engine.gateway import ExchangeGateway, TradeResult, symbol_for

logger = logging.getLogger(__name__)

# outcomes that are a normal "nothing to do" for the user, not a failure
_SKIP_ERRORS = (ClaimConflict, IneligibleUser, NoOpenCycle, OpenCycleExists)


class SignalExecutor:
    """Every order for a user goes through here, one at a time per user."""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: ExchangeGateway,
        notifications: NotificationService,
        repository: Optional[SignalRepository] = None,
        cycles: Optional[CycleStateMachine] = None,
        buy_allocation_pct=Decimal("10"),
        quantity_decimals: int = 8,
        quote_asset: str = "USDT",
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.gateway = gateway
        self.notifications = notifications
        self.repository = repository or SignalRepository()
        self.cycles = cycles or CycleStateMachine()
        self.buy_allocation_pct = to_decimal(buy_allocation_pct)
        self.quantity_step = Decimal(1).scaleb(-quantity_decimals)
        self.quote_asset = quote_asset
        self._clock = clock
        # entries disappear once no caller holds the lock
        self._user_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._user_locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user_id] = lock
            return lock

    def buy_quantity(self, total_value, price) -> Decimal:
        total_value = to_decimal(total_value)
        price = to_decimal(price)
        if total_value <= ZERO:
            raise SizingError("Portfolio has no value to allocate")
        if price <= ZERO:
            raise SizingError("Signal price must be positive")
        quantity = (total_value * self.buy_allocation_pct / Decimal("100") / price).quantize(
            self.quantity_step, rounding=ROUND_DOWN
        )
        if quantity <= ZERO:
            raise SizingError(f"Allocation of {total_value} rounds to a zero quantity")
        return quantity

    def _plan(self, db: Session, signal: Signal, user_id: str) -> tuple[Decimal, Optional[Cycle]]:
        open_cycle = self.cycles.find_open(db, user_id, signal.token)
        if signal.type == "BUY":
            if open_cycle is not None:
                raise OpenCycleExists(f"{signal.token} already has open cycle {open_cycle.id}")
            portfolio = get_portfolio(db, user_id)
            if portfolio is None:
                raise SizingError("No portfolio snapshot to size the order")
            return self.buy_quantity(portfolio.total_value, signal.price), None

        if open_cycle is None:
            raise NoOpenCycle(f"No open {signal.token} cycle to sell")
        quantity = self.cycles.remaining_amount(open_cycle)
        if quantity <= ZERO:
            raise NoOpenCycle(f"Open {signal.token} cycle {open_cycle.id} has nothing left to sell")
        return quantity, open_cycle

    def execute_for_user(self, signal: Signal, user_id: str, *, auto_executed: bool) -> ExecutionDetail:
        side, token = signal.type, signal.token
        activity_action = f"{'AUTO' if auto_executed else 'MANUAL'}_{side}"
        detail = ExecutionDetail(
            signal_id=signal.id,
            user_id=user_id,
            token=token,
            action=side,
            status="failed",
        )

        lock = self._user_lock(user_id)
        with lock:
            db = self._session_factory()
            try:
                try:
                    self._claim_and_execute(db, signal.id, user_id, auto_executed, activity_action, detail)
                    return detail
                except _SKIP_ERRORS as exc:
                    db.rollback()
                    detail.status = "skipped"
                    detail.reason = exc.reason
                    detail.error = exc.message
                    logger.info("Skipped %s %s for user %s: %s", side, token, user_id, exc.message)
                    if not isinstance(exc, ClaimConflict):
                        self._record_outcome(db, detail, activity_action, "skipped")
                    return detail
                except EngineError as exc:
                    db.rollback()
                    detail.reason = exc.reason
                    detail.error = str(exc)
                    logger.warning("Execution of signal %s failed for user %s: %s", signal.id, user_id, exc)
                except SQLAlchemyError as exc:
                    db.rollback()
                    detail.reason = PersistenceError.reason
                    detail.error = str(exc)
                    logger.error("Persistence failure on signal %s for user %s: %s", signal.id, user_id, exc)
                except Exception as exc:
                    db.rollback()
                    detail.reason = "unexpected_error"
                    detail.error = str(exc)
                    logger.exception("Unexpected failure on signal %s for user %s", signal.id, user_id)

                self._record_outcome(db, detail, activity_action, "failure")
                self._notify_failure(detail, side, token)
                return detail
            finally:
                db.close()

    def _claim_and_execute(
        self,
        db: Session,
        signal_id: str,
        user_id: str,
        auto_executed: bool,
        activity_action: str,
        detail: ExecutionDetail,
    ):
        signal = self.repository.get(db, signal_id)
        if signal is None:
            raise PersistenceError(f"Signal {signal_id} disappeared")
        decision = "auto" if auto_executed else "accept"
        if not self.repository.claim_user_decision(db, signal_id, user_id, decision):
            raise ClaimConflict(f"Signal {signal_id} already decided for user {user_id}")

        self._execute(db, signal, user_id, auto_executed, detail)
        record_activity(
            db,
            user_id=user_id,
            action=activity_action,
            token=signal.token,
            status="success",
            details=f"{signal.type} {detail.amount} {signal.token} @ {detail.price}",
            price=detail.price,
            amount=detail.amount,
            signal_id=signal_id,
            trade_id=detail.trade_id,
        )
        db.commit()

    def _execute(self, db: Session, signal: Signal, user_id: str, auto_executed: bool, detail: ExecutionDetail):
        quantity, open_cycle = self._plan(db, signal, user_id)
        symbol = symbol_for(signal.token, self.quote_asset)

        result = self.gateway.execute_trade(user_id, symbol, signal.type, quantity)
        price = self._fill_price(user_id, symbol, result, signal.price)
        amount = result.quantity if result.quantity and result.quantity > ZERO else quantity

        trade = self._store_trade(
            db,
            result,
            user_id=user_id,
            signal_id=signal.id,
            type=signal.type,
            token=signal.token,
            price=price,
            amount=amount,
            auto_executed=auto_executed,
        )

        detail.trade_id = trade.id
        detail.amount = amount
        detail.price = price

        if signal.type == "BUY":
            cycle = self.cycles.open_on_buy(db, user_id, signal.token, trade, price, amount)
        else:
            cycle = self.cycles.close_on_full_sell(db, open_cycle, trade, price, amount)
        trade.cycle_id = cycle.id
        db.commit()
        detail.cycle_id = cycle.id

        if signal.type == "BUY":
            self.repository.remember_signal_token(db, user_id, signal, self._clock())
            db.commit()

        try:
            refresh_portfolio_snapshot(db, user_id, self.gateway)
        except (GatewayError, SQLAlchemyError) as exc:
            db.rollback()
            logger.warning("Portfolio refresh after trade %s failed for user %s: %s", trade.id, user_id, exc)

        detail.status = "success"
        detail.success = True

        message = f"{'Auto-executed' if auto_executed else 'Executed'} {signal.type} for {signal.token} at ${price}"
        if signal.type == "SELL" and cycle.pnl is not None:
            message += f" (PnL {to_decimal(cycle.pnl):.2f}, {to_decimal(cycle.pnl_percentage):.2f}%)"
        try:
            self.notifications.notify(
                user_id,
                "trade",
                message,
                related_id=trade.id,
                priority="high",
                data={"signal_id": signal.id, "cycle_id": cycle.id, "amount": str(amount), "price": str(price)},
            )
        except SQLAlchemyError as exc:
            logger.error("Trade %s stored but notification failed for user %s: %s", trade.id, user_id, exc)

    def _fill_price(self, user_id: str, symbol: str, result: TradeResult, fallback) -> Decimal:
        if result.price and result.price > ZERO:
            return result.price
        try:
            return self.gateway.get_price(user_id, symbol)
        except GatewayError as exc:
            logger.warning(
                "Order %s has no fill price and %s has no quote (%s); recording it at %s",
                result.order_id,
                symbol,
                exc,
                fallback,
            )
            return to_decimal(fallback)

    def _store_trade(self, db: Session, result: TradeResult, **fields) -> Trade:
        trade = Trade(status="completed", order_id=result.order_id, **fields)
        try:
            db.add(trade)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            # the order is live on the exchange at this point
            logger.error(
                "Order %s filled for user %s but the trade could not be stored: %s",
                result.order_id,
                fields.get("user_id"),
                exc,
            )
            raise PersistenceError(f"Trade for order {result.order_id} not recorded: {exc}") from exc
        return trade

    def sell_cycle(self, user_id: str, cycle_id: str, percentage) -> str:
        """Manual sell of ``percentage`` of an open cycle; returns the trade id."""
        lock = self._user_lock(user_id)
        with lock:
            db = self._session_factory()
            try:
                return self._sell_cycle(db, user_id, cycle_id, to_decimal(percentage))
            finally:
                db.close()

    def _sell_cycle(self, db: Session, user_id: str, cycle_id: str, percentage: Decimal) -> str:
        # state is re-read under the lock; an auto SELL may have closed it meanwhile
        cycle = db.execute(
            select(Cycle).where(Cycle.id == cycle_id, Cycle.user_id == user_id)
        ).scalar_one_or_none()
        if cycle is None or cycle.state not in OPEN_STATES:
            raise CycleStateError(f"Cycle {cycle_id} is already closed")

        remaining = self.cycles.remaining_amount(cycle)
        full_exit = percentage >= HUNDRED
        quantity = remaining if full_exit else (remaining * percentage / HUNDRED).quantize(
            self.quantity_step, rounding=ROUND_DOWN
        )
        if quantity <= ZERO:
            raise SizingError(f"Nothing left to sell in cycle {cycle_id}")

        symbol = symbol_for(cycle.token, self.quote_asset)
        try:
            result = self.gateway.execute_trade(user_id, symbol, "SELL", quantity)
        except GatewayError as exc:
            record_activity(
                db,
                user_id=user_id,
                action="MANUAL_SELL",
                token=cycle.token,
                status="failure",
                amount=quantity,
                error_message=str(exc),
            )
            db.commit()
            raise

        price = self._fill_price(user_id, symbol, result, cycle.entry_price)
        amount = result.quantity if result.quantity and result.quantity > ZERO else quantity
        trade = self._store_trade(
            db,
            result,
            user_id=user_id,
            cycle_id=cycle.id,
            type="SELL",
            token=cycle.token,
            price=price,
            amount=amount,
            auto_executed=False,
        )

        try:
            if full_exit:
                self.cycles.close_on_full_sell(db, cycle, trade, price, amount)
            else:
                self.cycles.record_partial_sell(db, cycle, trade, percentage, price, amount)
            record_activity(
                db,
                user_id=user_id,
                action="MANUAL_SELL",
                token=cycle.token,
                status="success",
                details=f"sold {percentage}% of cycle {cycle.id}",
                price=price,
                amount=amount,
                trade_id=trade.id,
            )
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise CycleStateError(f"Cycle {cycle.id} changed while selling: {exc}") from exc

        try:
            refresh_portfolio_snapshot(db, user_id, self.gateway)
        except (GatewayError, SQLAlchemyError) as exc:
            db.rollback()
            logger.warning("Portfolio refresh after manual sell %s failed: %s", trade.id, exc)

        try:
            self.notifications.notify(
                user_id,
                "trade",
                f"Sold {percentage}% of {cycle.token} at ${price}",
                related_id=trade.id,
                priority="high",
                data={"cycle_id": cycle.id},
            )
        except SQLAlchemyError as exc:
            logger.error("Trade %s stored but notification failed for user %s: %s", trade.id, user_id, exc)
        return trade.id

    def _record_outcome(self, db: Session, detail: ExecutionDetail, action: str, status: str):
        try:
            record_activity(
                db,
                user_id=detail.user_id,
                action=action,
                token=detail.token,
                status=status,
                details=detail.reason,
                price=detail.price,
                amount=detail.amount,
                error_message=detail.error,
                signal_id=detail.signal_id,
                trade_id=detail.trade_id,
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Could not write activity for user %s: %s", detail.user_id, exc)

    def _notify_failure(self, detail: ExecutionDetail, side: str, token: str):
        try:
            self.notifications.notify(
                detail.user_id,
                "system",
                f"Failed to execute {side} for {token}: {detail.error}",
                related_id=detail.signal_id,
                priority="high",
                data={"reason": detail.reason},
            )
        except Exception:
            logger.exception("Failure notification for user %s could not be sent", detail.user_id)


class AutoExecutionEngine:
    """Only ``RepositoryUnavailable`` escapes ``run_once``."""

    def __init__(
        self,
        session_factory: sessionmaker,
        executor: SignalExecutor,
        repository: Optional[SignalRepository] = None,
        eligibility: Optional[EligibilityFilter] = None,
        max_workers: int = 4,
        budget_seconds: float = 240.0,
        claim_batch_size: int = 10,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self.executor = executor
        self.repository = repository or SignalRepository()
        self.eligibility = eligibility or EligibilityFilter(clock=clock)
        self.max_workers = max(1, max_workers)
        self.budget_seconds = budget_seconds
        self.claim_batch_size = max(1, claim_batch_size)
        self._clock = clock
        self._monotonic = monotonic

    def _claim_batch(self, now: datetime) -> list[Signal]:
        db = self._session_factory()
        try:
            return self.repository.claim_expired(db, now, limit=self.claim_batch_size)
        except SQLAlchemyError as exc:
            db.rollback()
            raise RepositoryUnavailable(f"Could not claim expired signals: {exc}") from exc
        finally:
            db.close()

    def _eligible_user_ids(self, signal: Signal, now: datetime) -> list[str]:
        db = self._session_factory()
        try:
            return [u.id for u in self.eligibility.find_eligible(db, signal, require_auto_trade=True, now=now)]
        finally:
            db.close()

    def _process_signal(self, signal: Signal, now: datetime, summary: RunSummary):
        try:
            user_ids = self._eligible_user_ids(signal, now)
        except SQLAlchemyError as exc:
            logger.error("Eligibility lookup failed for signal %s: %s", signal.id, exc)
            summary.record(
                ExecutionDetail(
                    signal_id=signal.id,
                    token=signal.token,
                    action=signal.type,
                    status="failed",
                    reason=PersistenceError.reason,
                    error=str(exc),
                )
            )
            return

        if not user_ids:
            logger.info("No eligible users for %s signal %s (%s)", signal.type, signal.id, signal.token)
            return

        logger.info("Executing %s signal %s (%s) for %d user(s)", signal.type, signal.id, signal.token, len(user_ids))
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(user_ids))) as pool:
            futures = {
                pool.submit(self.executor.execute_for_user, signal, user_id, auto_executed=True): user_id
                for user_id in user_ids
            }
            for future in as_completed(futures):
                user_id = futures[future]
                try:
                    detail = future.result()
                except Exception as exc:
                    logger.exception("Worker for user %s on signal %s crashed", user_id, signal.id)
                    detail = ExecutionDetail(
                        signal_id=signal.id,
                        user_id=user_id,
                        token=signal.token,
                        action=signal.type,
                        status="failed",
                        reason="unexpected_error",
                        error=str(exc),
                    )
                summary.record(detail)

    def run_once(self, now: Optional[datetime] = None) -> RunSummary:
        started = self._monotonic()
        summary = RunSummary()

        while True:
            if self._monotonic() - started >= self.budget_seconds:
                summary.budget_exhausted = True
                logger.warning("Auto-execution budget of %ss exhausted, leaving remaining signals", self.budget_seconds)
                break

            claimed = self._claim_batch(now or self._clock())
            if not claimed:
                break
            # claimed signals are always processed, even past the budget
            for signal in claimed:
                summary.processed += 1
                self._process_signal(signal, now or self._clock(), summary)
            if len(claimed) < self.claim_batch_size:
                break

        logger.info(
            "Auto-execution run: processed=%d successful=%d failed=%d skipped=%d",
            summary.processed,
            summary.successful,
            summary.failed,
            summary.skipped,
        )
        return summary


class SignalNotifier:

    def __init__(
        self,
        session_factory: sessionmaker,
        notifications: NotificationService,
        repository: Optional[SignalRepository] = None,
        eligibility: Optional[EligibilityFilter] = None,
        lookback: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.notifications = notifications
        self.repository = repository or SignalRepository()
        self.eligibility = eligibility or EligibilityFilter(clock=clock)
        self.lookback = lookback
        self._clock = clock

    def _notify_user(self, db: Session, user_id: str, signal: Signal, now: datetime) -> bool:
        try:
            sent = self.notifications.notify(
                user_id,
                "signal",
                f"New {signal.type} signal for {signal.token} at {signal.price}",
                related_id=signal.id,
                priority="high",
                data={"expires_at": signal.expires_at.isoformat(), "risk_level": signal.risk_level},
            )
            if not sent:
                return False
            self.repository.remember_signal_token(db, user_id, signal, now)
            db.commit()
            return True
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Signal %s notification failed for user %s: %s", signal.id, user_id, exc)
            return False

    def run_once(self, now: Optional[datetime] = None) -> NotifierSummary:
        now = now or self._clock()
        summary = NotifierSummary()
        db = self._session_factory()
        try:
            try:
                signals = self.repository.find_recent_active(db, now, self.lookback)
            except SQLAlchemyError as exc:
                db.rollback()
                raise RepositoryUnavailable(f"Could not load recent signals: {exc}") from exc
            # detached so a per-user rollback does not expire them
            for signal in signals:
                db.expunge(signal)

            for signal in signals:
                result = SignalNotifyResult(signal_id=signal.id, signal=f"{signal.type} {signal.token}")
                try:
                    users = self.eligibility.find_eligible(db, signal, require_auto_trade=False, now=now)
                    user_ids = [u.id for u in users]
                except SQLAlchemyError as exc:
                    db.rollback()
                    logger.error("Eligibility lookup failed for signal %s: %s", signal.id, exc)
                    result.error = str(exc)
                    user_ids = []
                for user_id in user_ids:
                    if self._notify_user(db, user_id, signal, now):
                        result.users_notified += 1
                summary.results.append(result)
                summary.total_users_notified += result.users_notified
            summary.total_signals = len(signals)
        finally:
            db.close()

        logger.info(
            "Signal notifier: %d signal(s), %d user(s) notified",
            summary.total_signals,
            summary.total_users_notified,
        )
        return summary
