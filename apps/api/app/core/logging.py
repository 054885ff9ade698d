import logging


def setup_logging(level: str | int = "INFO") -> None:
    lvl = getattr(logging, str(level).upper(), logging.INFO) if isinstance(level, str) else level
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    # requests/urllib3 are chatty at INFO for every pooled connection
    logging.getLogger("urllib3").setLevel(max(lvl, logging.WARNING))
