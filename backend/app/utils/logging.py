import logging
import sys

from app.core.config import settings

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger("app")
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a module logger under the shared ``app`` handler."""
    _configure_root()
    return logging.getLogger(name)
