import logging
import os

from lobster.config import settings

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging() -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once; only the first call has an effect.
    """
    global _configured
    if _configured:
        return
    default_level = "DEBUG" if settings.debug else "INFO"
    level = os.getenv("LOG_LEVEL", default_level).upper()

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)

    # uvicorn access lines duplicate what the request logs already carry
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    _configured = True
