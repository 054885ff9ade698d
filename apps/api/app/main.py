from contextlib import asynccontextmanager

from fastapi import FastAPI

import apps.api.app.models.activity_log
import apps.api.app.models.cycle
import apps.api.app.models.notification
import apps.api.app.models.portfolio
import apps.api.app.models.signal
import apps.api.app.models.trade
import apps.api.app.models.user

from apps.api.app.api.cron import router as cron_router
from apps.api.app.api.cycles import router as cycles_router
from apps.api.app.api.notifications import router as notifications_router
from apps.api.app.api.portfolio import router as portfolio_router
from apps.api.app.api.signals import router as signals_router
from apps.api.app.api.trades import router as trades_router
from apps.api.app.api.users import router as users_router
from apps.api.app.core.config import settings
from apps.api.app.core.logging import setup_logging
from apps.api.app.db.session import Base, engine
from apps.worker.app.engine.bootstrap import build_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    Base.metadata.create_all(bind=engine)
    # tests install their own runtime before start-up
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime()
    yield


app = FastAPI(title="cycle-trader API", lifespan=lifespan)

app.include_router(users_router)
app.include_router(signals_router)
app.include_router(cycles_router)
app.include_router(trades_router)
app.include_router(portfolio_router)
app.include_router(notifications_router)
app.include_router(cron_router)


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/")
def root():
    return {"app": "cycle-trader", "docs": "/docs"}
