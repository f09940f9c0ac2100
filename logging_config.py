"""
logging_config.py - Logging setup shared by the import pipeline, API and CLI.

Every module logs through `get_logger(__name__)` using pipe-delimited
`event | key=value` messages so batch runs can be grepped per tenant.
"""

from __future__ import annotations

import functools
import logging
import sys
from typing import Callable, TypeVar, Union

T = TypeVar("T")


def _coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: Union[int, str] = logging.INFO, json_format: bool = False) -> None:
    """Configure the root logger.

    Args:
        level: Logging level, numeric or a name such as "DEBUG".
        json_format: If True, emit one JSON-like object per line.
    """
    root = logging.getLogger()
    root.setLevel(_coerce_level(level))
    root.handlers.clear()

    if json_format:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
            '"module":"%(name)s","message":"%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(name)-14s] %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)


def graceful(default_factory: Callable[[], T], log_level: int = logging.ERROR):
    """Decorator for best-effort steps: log the failure and return a default.

    Used where a side step (auto-matching a freshly imported transaction)
    must never fail the row that triggered it.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (KeyboardInterrupt, SystemExit):
                raise
            except Exception as exc:
                logger = logging.getLogger(func.__module__)
                logger.log(
                    log_level,
                    "%s failed: %s: %s",
                    func.__name__,
                    type(exc).__name__,
                    exc,
                    exc_info=True,
                )
                return default_factory()

        return wrapper

    return decorator
