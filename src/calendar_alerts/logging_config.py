import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

NOISY_LOGGERS = ("httpx", "httpcore", "discord", "apscheduler", "uvicorn.access")


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format=LOG_FORMAT,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
