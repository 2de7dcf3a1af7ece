from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

LOG_FILENAME = "ticket-autorunner.log"
_ROOT_LOGGER = "ticket_autorunner"
_MAX_FIELD_CHARS = 2000


def _coerce_field(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_coerce_field(item) for item in value]
    if isinstance(value, dict):
        return {str(k): _coerce_field(v) for k, v in value.items()}
    text = str(value)
    if len(text) > _MAX_FIELD_CHARS:
        text = text[:_MAX_FIELD_CHARS] + "..."
    return text


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit a single structured log line: ``{"event": ..., **fields}``."""
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        payload[key] = _coerce_field(value)
    if exc is not None:
        payload["error"] = _coerce_field(str(exc) or exc.__class__.__name__)
        payload["error_type"] = exc.__class__.__name__
    try:
        message = json.dumps(payload, sort_keys=False)
    except (TypeError, ValueError):
        message = str(payload)
    logger.log(level, message)


def setup_logging(
    log_dir: Optional[Path] = None,
    *,
    verbose: bool = False,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
) -> logging.Logger:
    """Configure the package logger with console and rotating-file handlers.

    Calling this more than once replaces the handlers it installed earlier.
    """
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(logger.handlers):
        if getattr(handler, "_ticket_autorunner", False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter("%(asctime)s %(levelname)-7s %(name)s %(message)s")
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console._ticket_autorunner = True  # type: ignore[attr-defined]
    logger.addHandler(console)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILENAME,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler._ticket_autorunner = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    return logger


__all__ = ["LOG_FILENAME", "log_event", "setup_logging"]
