import argparse
import logging
import time

from apps.api.app.core.config import settings
from apps.api.app.core.errors import RepositoryUnavailable
from apps.api.app.core.logging import setup_logging
from apps.worker.app.engine.bootstrap import build_runtime

logger = logging.getLogger(__name__)


def run_cycle(runtime) -> bool:
    """One worker tick. Each job runs even if an earlier one hit a database outage."""
    healthy = True
    jobs = (
        ("signal notifier", runtime.notifier.run_once),
        ("auto-execution", runtime.engine.run_once),
        ("dedup purge", runtime.deduplicator.purge_expired),
    )
    for name, job in jobs:
        try:
            job()
        except RepositoryUnavailable as exc:
            # retried on the next tick
            logger.error("%s skipped, database unavailable: %s", name, exc)
            healthy = False
    return healthy


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Signal notifier and auto-execution worker")
    parser.add_argument("--once", action="store_true", help="run one pass and exit")
    parser.add_argument("--interval", type=float, default=60.0, help="seconds between passes")
    args = parser.parse_args(argv)

    setup_logging(settings.LOG_LEVEL)
    runtime = build_runtime()

    while True:
        healthy = run_cycle(runtime)
        if args.once:
            return 0 if healthy else 1
        time.sleep(args.interval)


if __name__ == "__main__":
    raise SystemExit(main())
