"""Process-wide logging setup for the API and the Celery worker."""

import logging
import sys

from app.config import settings

_DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: int | str | None = None, format_string: str | None = None) -> None:
    level = level or settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format=format_string or _DEFAULT_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "celery", "app"):
        logging.getLogger(name).setLevel(level)
    # routeros_api is chatty at INFO on every login
    logging.getLogger("routeros_api").setLevel(logging.WARNING)
