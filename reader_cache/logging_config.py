import os
import logging
import logging.config
from pathlib import Path
from typing import Dict, Any, Optional


_configured = False  # idempotency guard

# Third-party loggers that follow the root level
_ALIGNED = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")

# httpx logs every request at INFO; prefetch traffic would drown the rest
_DEFAULT_LEVELS = {"httpx": "WARNING"}

_PACKAGE = "reader_cache"


def parse_logger_levels(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``name=LEVEL`` pairs separated by commas.

    ``"reader_cache.page_cache=debug, httpx=info"`` ->
    ``{"reader_cache.page_cache": "DEBUG", "httpx": "INFO"}``. Entries without
    a name or a known level are skipped.
    """
    levels: Dict[str, str] = {}
    for item in (raw or "").split(","):
        name, sep, level = item.partition("=")
        name, level = name.strip(), level.strip().upper()
        if not sep or not name:
            continue
        if not isinstance(logging.getLevelName(level), int):
            continue
        levels[name] = level
    return levels


def _build_dict_config(
    log_file: str | None, level: str, logger_levels: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "std",
        }
    }

    root_handlers = ["console"]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.WatchedFileHandler",
            "filename": log_file,
            "formatter": "std",
        }
        root_handlers.append("file")

    levels = dict(_DEFAULT_LEVELS)
    levels.update(logger_levels or {})

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "std": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"}
        },
        "handlers": handlers,
        "root": {"level": level, "handlers": root_handlers},
        "loggers": {name: {"level": lvl} for name, lvl in levels.items()},
    }


def configure_logging() -> None:
    """Configure logging to stdout and (optionally) to LOG_FILE_PATH.

    Per-logger overrides come from ``LOG_LEVELS`` (``name=LEVEL`` pairs, e.g.
    ``reader_cache.scheduler=DEBUG`` to trace prefetch dispatch alone).
    ``READER_CACHE_LOG_LEVEL`` is shorthand for the whole package and loses to
    a ``reader_cache`` entry in ``LOG_LEVELS``.
    Idempotent: safe to call multiple times.
    """
    global _configured
    if _configured:
        return

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_file = os.getenv("LOG_FILE_PATH") or None

    overrides = parse_logger_levels(f"{_PACKAGE}={os.getenv('READER_CACHE_LOG_LEVEL', '')}")
    overrides.update(parse_logger_levels(os.getenv("LOG_LEVELS")))

    logging.config.dictConfig(_build_dict_config(log_file, level, overrides))

    for name in _ALIGNED:
        logging.getLogger(name).setLevel(level)

    _configured = True
