import logging

from fastapi import APIRouter, Depends, HTTPException, status

from apps.api.app.api.deps import get_runtime, require_cron_secret
from apps.api.app.core.errors import RepositoryUnavailable
from apps.api.app.schemas.execution import NotifierSummary, RunSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


def _unavailable(job: str, exc: RepositoryUnavailable) -> HTTPException:
    logger.error("%s aborted: %s", job, exc)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)


@router.post("/auto-execute", response_model=RunSummary)
def auto_execute(runtime=Depends(get_runtime)):
    try:
        return runtime.engine.run_once()
    except RepositoryUnavailable as exc:
        raise _unavailable("Auto-execution", exc)


@router.post("/signal-notifier", response_model=NotifierSummary)
def signal_notifier(runtime=Depends(get_runtime)):
    try:
        return runtime.notifier.run_once()
    except RepositoryUnavailable as exc:
        raise _unavailable("Signal notifier", exc)


@router.post("/notifications/purge")
def purge_notification_dedup(runtime=Depends(get_runtime)):
    try:
        return {"purged": runtime.deduplicator.purge_expired()}
    except RepositoryUnavailable as exc:
        raise _unavailable("Dedup purge", exc)
