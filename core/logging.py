import logging

from core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the API process and Celery workers."""
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level or settings.LOG_LEVEL)
    # SQL echo is driven by SQLALCHEMY_ECHO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
