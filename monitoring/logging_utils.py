import logging
import os
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Chatty third-party loggers that drown out order flow at INFO.
_QUIET_LOGGERS = ("websockets", "asyncio", "uvicorn.access")


def _resolve_level(level: Optional[Union[int, str]]) -> int:
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: Optional[Union[int, str]] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Called once from the entrypoint; later calls are ignored if handlers exist.
    ``level`` accepts a logging constant or a name such as ``"DEBUG"``; when
    omitted the ``LOG_LEVEL`` environment variable decides.
    """
    if logging.getLogger().handlers:
        return

    logging.basicConfig(level=_resolve_level(level), format=log_format or DEFAULT_FORMAT)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
