import collections
import json
import logging
from logging.handlers import RotatingFileHandler
from typing import Any, Optional, OrderedDict

from .config import LogConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

_MAX_CACHED_LOGGERS = 16
_LOGGER_CACHE: "OrderedDict[str, logging.Logger]" = collections.OrderedDict()


def _level(debug: bool) -> int:
    return logging.DEBUG if debug else logging.INFO


def _release(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        try:
            handler.close()
        except Exception:
            pass
    logger.handlers.clear()


def setup_rotating_logger(
    name: str, log_config: LogConfig, *, debug: bool = False
) -> logging.Logger:
    """
    Return the rotating file logger for `name`, creating it on first use.

    Every name gets its own handler and does not propagate, so a CLI
    invocation and a long-lived server never write through each other's
    handlers. Only the most recently used loggers keep their files open.
    """
    cached = _LOGGER_CACHE.get(name)
    if cached is not None:
        _LOGGER_CACHE.move_to_end(name)
        cached.setLevel(_level(debug))
        return cached

    log_config.path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_config.path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger = logging.getLogger(name)
    _release(logger)
    logger.addHandler(handler)
    logger.setLevel(_level(debug))
    logger.propagate = False

    _LOGGER_CACHE[name] = logger
    while len(_LOGGER_CACHE) > _MAX_CACHED_LOGGERS:
        _, evicted = _LOGGER_CACHE.popitem(last=False)
        _release(evicted)
    return logger


def safe_log(
    logger: logging.Logger,
    level: int,
    message: str,
    *args: Any,
    exc: Optional[BaseException] = None,
) -> None:
    """Log without ever raising, even on a bad format string or a broken handler."""
    try:
        try:
            text = message % args if args else message
        except (TypeError, ValueError):
            text = " ".join([message, *(str(arg) for arg in args)])
        if exc is not None:
            text = f"{text}: {exc}"
        logger.log(level, text)
    except Exception:
        pass


def _encode_field(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return json.dumps(str(value))


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit one `event key=value ...` line; values are JSON encoded."""
    try:
        if not logger.isEnabledFor(level):
            return
        parts = [event]
        parts.extend(f"{key}={_encode_field(value)}" for key, value in fields.items())
        if exc is not None:
            parts.append(f"error={_encode_field(f'{type(exc).__name__}: {exc}')}")
        logger.log(level, " ".join(parts))
    except Exception:
        pass
