from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from apps.api.app.core.config import settings
from apps.api.app.db.session import SessionLocal
from apps.api.app.models.user import User
from apps.api.app.services.credentials import get_exchange_credentials, get_user_exchange
from apps.api.app.services.eligibility import EligibilityFilter
from apps.api.app.services.notifications import NotificationDeduplicator, NotificationService
from apps.api.app.services.signals import SignalRepository
from apps.worker.app.engine.binance_client import BinanceGateway
from apps.worker.app.engine.btcc_client import BtccGateway
from apps.worker.app.engine.execution_runtime import AutoExecutionEngine, SignalExecutor, SignalNotifier
from apps.worker.app.engine.gateway import ExchangeGateway, ExchangeRouter
from apps.worker.app.engine.notifier import FanoutChannel, InboxChannel, NotificationChannel, TelegramChannel


@dataclass
class Runtime:
    session_factory: sessionmaker
    gateway: ExchangeGateway
    channel: NotificationChannel
    deduplicator: NotificationDeduplicator
    notifications: NotificationService
    executor: SignalExecutor
    engine: AutoExecutionEngine
    notifier: SignalNotifier


def _lookup(session_factory: sessionmaker, fn):
    def call(user_id: str):
        db = session_factory()
        try:
            return fn(db, user_id)
        finally:
            db.close()

    return call


def _telegram_chat_id(db, user_id: str) -> Optional[int]:
    return db.execute(select(User.telegram_id).where(User.id == user_id)).scalar_one_or_none()


def build_gateway(session_factory: sessionmaker) -> ExchangeGateway:
    credentials = _lookup(session_factory, get_exchange_credentials)
    common = {
        "credentials_provider": credentials,
        "timeout": settings.GATEWAY_TIMEOUT_SECONDS,
        "quote_asset": settings.QUOTE_ASSET,
        "stable_assets": settings.stable_assets,
    }
    return ExchangeRouter(
        {
            "BINANCE": BinanceGateway(settings.BINANCE_BASE_URL, **common),
            "BTCC": BtccGateway(settings.BTCC_BASE_URL, **common),
        },
        exchange_for_user=_lookup(session_factory, get_user_exchange),
    )


def build_channel(session_factory: sessionmaker) -> NotificationChannel:
    channels: list[NotificationChannel] = [InboxChannel(session_factory)]
    if settings.TELEGRAM_BOT_TOKEN:
        channels.append(TelegramChannel(settings.TELEGRAM_BOT_TOKEN, _lookup(session_factory, _telegram_chat_id)))
    return FanoutChannel(channels)


def build_runtime(
    session_factory: sessionmaker = SessionLocal,
    gateway: Optional[ExchangeGateway] = None,
    channel: Optional[NotificationChannel] = None,
) -> Runtime:
    """Wires the engine once per process; the API and the worker each hold one."""
    gateway = gateway or build_gateway(session_factory)
    channel = channel or build_channel(session_factory)

    repository = SignalRepository()
    eligibility = EligibilityFilter(suppression_window=timedelta(hours=settings.TOKEN_SUPPRESSION_HOURS))
    deduplicator = NotificationDeduplicator(
        session_factory,
        cooldown=timedelta(minutes=settings.NOTIFICATION_COOLDOWN_MINUTES),
    )
    notifications = NotificationService(deduplicator, channel)

    executor = SignalExecutor(
        session_factory,
        gateway,
        notifications,
        repository=repository,
        buy_allocation_pct=settings.BUY_ALLOCATION_PCT,
        quantity_decimals=settings.QUANTITY_DECIMALS,
        quote_asset=settings.QUOTE_ASSET,
    )
    engine = AutoExecutionEngine(
        session_factory,
        executor,
        repository=repository,
        eligibility=eligibility,
        max_workers=settings.AUTO_EXECUTION_MAX_WORKERS,
        budget_seconds=settings.AUTO_EXECUTION_BUDGET_SECONDS,
        claim_batch_size=settings.CLAIM_BATCH_SIZE,
    )
    notifier = SignalNotifier(
        session_factory,
        notifications,
        repository=repository,
        eligibility=eligibility,
        lookback=timedelta(minutes=settings.SIGNAL_NOTIFY_LOOKBACK_MINUTES),
    )
    return Runtime(
        session_factory=session_factory,
        gateway=gateway,
        channel=channel,
        deduplicator=deduplicator,
        notifications=notifications,
        executor=executor,
        engine=engine,
        notifier=notifier,
    )
