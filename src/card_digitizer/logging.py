import logging
import os
from typing import Any, List, MutableMapping, Optional, Tuple


_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_MARKER = "_card_digitizer_handlers"


def _level_from_env() -> int:
    raw = os.environ.get("LOG_LEVEL", "INFO")
    return _LEVELS.get(raw.upper().strip(), logging.INFO)


def _handlers(level: int) -> Tuple[List[logging.Handler], Optional[str]]:
    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    problem = None
    log_file = os.environ.get("LOG_FILE")
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as exc:
            problem = f"LOG_FILE {log_file!r} could not be opened ({exc}); logging to the console only"
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(formatter)
    return handlers, problem


def get_logger(name: str) -> logging.Logger:
    """Return a named logger writing to the console (and LOG_FILE when set).

    Level comes from LOG_LEVEL. Handlers are attached once per name and
    records do not propagate to the root logger.
    """
    logger = logging.getLogger(name)
    if getattr(logger, _MARKER, False):
        return logger

    level = _level_from_env()
    logger.setLevel(level)
    handlers, problem = _handlers(level)
    for h in handlers:
        logger.addHandler(h)
    logger.propagate = False
    setattr(logger, _MARKER, True)
    if problem:
        logger.warning(problem)
    return logger


class RecordLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the batch position and record id."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        position = ""
        if extra.get("index") is not None and extra.get("total"):
            position = f"[{extra['index'] + 1}/{extra['total']}] "
        return f"{position}record {extra.get('record_id')}: {msg}", kwargs


def record_logger(
    logger: logging.Logger,
    record_id: str,
    *,
    index: Optional[int] = None,
    total: Optional[int] = None,
) -> RecordLogAdapter:
    return RecordLogAdapter(logger, {"record_id": record_id, "index": index, "total": total})
