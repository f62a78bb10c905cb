"""Logging setup for ddiengine (loguru).

Env vars:
- DDIENGINE_LOG_LEVEL: log level (DEBUG/INFO/WARNING/ERROR), default INFO
- DDIENGINE_LOG_FILE: optional path to write logs in addition to stderr
- DDIENGINE_LOG_FORMAT: optional log format string for loguru

Also includes a helper to summarize engine payloads (large JSON strings,
nested catalogs) for logging without dumping them whole.
"""
from __future__ import annotations
import os
import sys
from typing import Any, Dict, Optional
from loguru import logger

_CONFIGURED = False

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None, force: bool = False) -> None:
    """Configure the loguru logger once.

    Explicit arguments win over environment variables. ``force`` re-applies the
    configuration (the CLI uses it after parsing ``--log-dir``).
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    level = (level or os.getenv("DDIENGINE_LOG_LEVEL", "INFO")).upper()
    fmt = os.getenv("DDIENGINE_LOG_FORMAT", DEFAULT_FORMAT)
    logger.remove()
    logger.add(sys.stderr, level=level, format=fmt)

    log_file = log_file or os.getenv("DDIENGINE_LOG_FILE")
    if log_file:
        logger.add(log_file, level=level, format=fmt, rotation="00:00", retention="7 days", enqueue=True)

    _CONFIGURED = True


def summarize_for_log(obj: Any, *, max_items: int = 8) -> Any:
    """Return a compact, JSON-serializable summary of an engine payload.

    - str: length and truncated preview
    - dict: size and first keys
    - list/tuple: length and preview of element types
    - other scalars: returned directly
    """
    if obj is None or isinstance(obj, (bool, int, float)):
        return obj
    if isinstance(obj, str):
        return {"type": "str", "len": len(obj), "preview": (obj if len(obj) <= 200 else obj[:197] + "...")}
    if isinstance(obj, dict):
        out: Dict[str, Any] = {"type": "dict", "len": len(obj)}
        out["keys"] = [str(k) for k in list(obj.keys())[:max_items]]
        return out
    if isinstance(obj, (list, tuple)):
        return {
            "type": type(obj).__name__,
            "len": len(obj),
            "preview_types": [type(x).__name__ for x in list(obj)[:max_items]],
        }
    return {"type": type(obj).__name__}


__all__ = ["setup_logging", "summarize_for_log", "logger"]
