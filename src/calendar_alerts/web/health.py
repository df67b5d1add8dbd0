import logging
from typing import Callable, Optional

from fastapi import FastAPI

from calendar_alerts import __version__

log = logging.getLogger(__name__)


def create_app(status_provider: Optional[Callable[[], dict]] = None) -> FastAPI:
    app = FastAPI(title="calendar-alerts", version=__version__)

    @app.get("/health")
    async def health():
        body = {"ok": True, "version": __version__}
        if status_provider is not None:
            body["scheduler"] = status_provider()
        log.debug("Health endpoint was pinged")
        return body

    return app
