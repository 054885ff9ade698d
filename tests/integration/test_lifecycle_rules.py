from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from apps.api.app.core.errors import CycleStateError
from apps.api.app.core.time import utc_now
from apps.api.app.models.cycle import Cycle
from apps.api.app.models.notification import NotificationDedupEntry
from apps.api.app.models.signal import Signal
from apps.api.app.models.trade import Trade
from apps.api.app.models.user import User, UserSignalToken
from apps.api.app.schemas.signal import SignalCreate
from apps.api.app.services.cycles import CycleStateMachine, compute_cycle_pnl
from apps.api.app.services.eligibility import EligibilityFilter
from apps.api.app.services.portfolio import calculate_holding_pnl
from apps.api.app.services.signals import SignalRepository


def test_cycle_pnl_on_full_exit(db, make_user):
    user_id = make_user()
    machine = CycleStateMachine()
    cycle = machine.open_on_buy(db, user_id, "BTC", None, Decimal("45000"), amount=Decimal("0.5"))
    db.commit()

    closed = machine.close_on_full_sell(db, cycle, None, Decimal("50000"), Decimal("0.5"))
    db.commit()

    assert closed.state == "exit"
    assert Decimal(str(closed.pnl)) == Decimal("2500")
    assert abs(Decimal(str(closed.pnl_percentage)) - Decimal("11.111")) < Decimal("0.001")


def test_pnl_percentage_with_zero_average_price():
    holding = calculate_holding_pnl("BTC", Decimal("0.5"), Decimal("0"), Decimal("50000"))

    assert holding.pnl_percentage == Decimal("0")
    assert holding.value == Decimal("25000")
    assert holding.pnl == holding.value


def test_compute_cycle_pnl_loss():
    pnl, pct = compute_cycle_pnl("100", "90", "2")
    assert pnl == Decimal("-20")
    assert pct == Decimal("-10")


def test_at_most_one_open_cycle_per_user_and_token(db, make_user):
    user_id = make_user()
    machine = CycleStateMachine()

    first = machine.open_on_buy(db, user_id, "ETH", None, Decimal("3000"), amount=Decimal("1"))
    db.commit()
    again = machine.open_on_buy(db, user_id, "ETH", None, Decimal("3100"), amount=Decimal("2"))
    db.commit()
    assert again.id == first.id

    # the index itself rejects a second open row
    db.add(Cycle(user_id=user_id, token="ETH", state="hold", entry_price=Decimal("1"), entry_amount=Decimal("1")))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

    open_rows = db.execute(
        select(Cycle).where(Cycle.user_id == user_id, Cycle.token == "ETH", Cycle.state.in_(("entry", "hold")))
    ).scalars().all()
    assert len(open_rows) == 1


def test_closed_cycle_allows_a_new_one(db, make_user):
    user_id = make_user()
    machine = CycleStateMachine()
    cycle = machine.open_on_buy(db, user_id, "ETH", None, Decimal("3000"), amount=Decimal("1"))
    machine.close_on_full_sell(db, cycle, None, Decimal("3300"), Decimal("1"))
    db.commit()

    fresh = machine.open_on_buy(db, user_id, "ETH", None, Decimal("3200"), amount=Decimal("1"))
    db.commit()

    assert fresh.id != cycle.id
    assert fresh.state == "entry"


def test_closing_twice_is_rejected(db, make_user):
    user_id = make_user()
    machine = CycleStateMachine()
    cycle = machine.open_on_buy(db, user_id, "SOL", None, Decimal("100"), amount=Decimal("3"))
    machine.close_on_full_sell(db, cycle, None, Decimal("120"), Decimal("3"))
    db.commit()

    with pytest.raises(CycleStateError):
        machine.close_on_full_sell(db, cycle, None, Decimal("130"), Decimal("3"))


def test_partial_sells_reduce_remaining_without_changing_state(db, make_user):
    user_id = make_user()
    machine = CycleStateMachine()
    cycle = machine.open_on_buy(db, user_id, "ETH", None, Decimal("3000"), amount=Decimal("2"))
    db.commit()

    trade = Trade(user_id=user_id, type="SELL", token="ETH", price=Decimal("3100"), amount=Decimal("0.5"))
    db.add(trade)
    db.flush()
    machine.record_partial_sell(db, cycle, trade, Decimal("25"), Decimal("3100"), Decimal("0.5"))
    db.commit()

    assert cycle.state == "entry"
    assert machine.remaining_amount(cycle) == Decimal("1.5")
    with pytest.raises(ValueError):
        machine.record_partial_sell(db, cycle, trade, Decimal("0"), Decimal("3100"), Decimal("0.1"))


def test_mark_hold_is_informational(db, make_user):
    user_id = make_user()
    machine = CycleStateMachine()
    cycle = machine.open_on_buy(db, user_id, "ADA", None, Decimal("0.5"), amount=Decimal("100"))
    machine.mark_hold(db, cycle)
    db.commit()
    assert cycle.state == "hold"

    closed = machine.close_on_full_sell(db, cycle, None, Decimal("0.6"), Decimal("100"))
    assert closed.state == "exit"


def test_notification_dedup_window(runtime):
    dedup = runtime.deduplicator
    t0 = utc_now()

    assert dedup.should_notify("u1", "trade", "trade-1", now=t0) is True
    assert dedup.should_notify("u1", "trade", "trade-1", now=t0 + timedelta(minutes=5)) is False
    assert dedup.should_notify("u1", "trade", "trade-1", now=t0 + timedelta(minutes=31)) is True
    # the refresh restarts the window
    assert dedup.should_notify("u1", "trade", "trade-1", now=t0 + timedelta(minutes=40)) is False


def test_notification_dedup_keys_are_independent(runtime):
    dedup = runtime.deduplicator
    now = utc_now()

    assert dedup.should_notify("u1", "trade", "x", now=now) is True
    assert dedup.should_notify("u2", "trade", "x", now=now) is True
    assert dedup.should_notify("u1", "signal", "x", now=now) is True
    assert dedup.should_notify("u1", "trade", "y", now=now) is True
    assert dedup.should_notify("u1", "system", None, now=now) is True
    assert dedup.should_notify("u1", "system", None, now=now) is True


def test_purge_only_removes_expired_entries(runtime, db):
    dedup = runtime.deduplicator
    now = utc_now()
    dedup.should_notify("u1", "trade", "old", now=now - timedelta(hours=2))
    dedup.should_notify("u1", "trade", "new", now=now)

    assert dedup.purge_expired(now=now) == 1
    remaining = db.execute(select(NotificationDedupEntry.related_id)).scalars().all()
    assert remaining == ["new"]
    # a purged key starts over
    assert dedup.should_notify("u1", "trade", "old", now=now) is True


def _shown(db, user_id, token, ago, signal_id=None):
    db.add(UserSignalToken(user_id=user_id, token=token, signal_id=signal_id, shown_at=utc_now() - ago))
    db.commit()


def test_recent_token_suppresses_buy(db, make_user, make_signal):
    user_id = make_user()
    signal_id = make_signal(token="BTC")
    _shown(db, user_id, "BTC", timedelta(hours=1), signal_id="older-signal")
    db.expire_all()

    eligible = EligibilityFilter().find_eligible(db, db.get(Signal, signal_id))

    assert user_id not in [u.id for u in eligible]


def test_old_token_entry_does_not_suppress(db, make_user, make_signal):
    user_id = make_user()
    signal_id = make_signal(token="BTC")
    _shown(db, user_id, "BTC", timedelta(hours=25), signal_id="older-signal")
    db.expire_all()

    eligible = EligibilityFilter().find_eligible(db, db.get(Signal, signal_id))

    assert [u.id for u in eligible] == [user_id]


def test_same_signal_entry_does_not_suppress_itself(db, make_user, make_signal):
    user_id = make_user()
    signal_id = make_signal(token="BTC")
    _shown(db, user_id, "BTC", timedelta(minutes=10), signal_id=signal_id)
    db.expire_all()

    user = db.get(User, user_id)
    assert EligibilityFilter().is_recently_signaled(user, "BTC") is True
    eligible = EligibilityFilter().find_eligible(db, db.get(Signal, signal_id))
    assert [u.id for u in eligible] == [user_id]


def test_register_signal_dedups_and_defaults_expiry(db):
    repo = SignalRepository()
    now = utc_now()
    payload = SignalCreate(type="buy", token="eth", price=Decimal("3500"), risk_level="high")

    signal, created = repo.register_signal(db, payload, now=now)
    again, created_again = repo.register_signal(db, payload, now=now + timedelta(minutes=1))

    assert created is True
    assert created_again is False
    assert again.id == signal.id
    assert signal.type == "BUY"
    assert signal.token == "ETH"
    assert signal.expires_at - signal.created_at == timedelta(minutes=30)


def test_register_signal_rejects_past_expiry(db):
    repo = SignalRepository()
    now = utc_now()
    payload = SignalCreate(type="SELL", token="BTC", price=Decimal("1"), expires_at=now - timedelta(seconds=1))

    with pytest.raises(ValueError):
        repo.register_signal(db, payload, now=now)


def test_user_decision_claimed_once(db, make_user, make_signal):
    repo = SignalRepository()
    user_id = make_user()
    signal_id = make_signal()

    assert repo.claim_user_decision(db, signal_id, user_id, "skip") is True
    assert repo.claim_user_decision(db, signal_id, user_id, "auto") is False
    assert repo.get_user_decision(db, signal_id, user_id).action == "skip"
