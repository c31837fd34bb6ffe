"""femtologging helpers for devcluster command output.

Diagnostic and progress lines (``[INFO]``/``[WARN]`` style status) flow
through femtologging; the primary result of a command (a resolved context,
a written path, a PEM document) is printed to stdout by the caller.

Example:
>>> from devcluster.logging import get_logger, log_info
>>> logger = get_logger(__name__)
>>> log_info(logger, "Using context %s", "k3d-k3s-default")

"""

from __future__ import annotations

import typing as typ

from femtologging import basicConfig, get_logger

DEFAULT_LEVEL = "INFO"
LEVELS = frozenset({"TRACE", "DEBUG", "INFO", "WARN", "WARNING", "ERROR", "CRITICAL"})


def normalize_log_level(level: str | None) -> tuple[str, bool]:
    """Map a raw level string onto a femtologging level name.

    Returns
    -------
    tuple[str, bool]
        The level to use and whether ``level`` was replaced by the default.

    """
    candidate = (level or "").strip().upper()
    if candidate in LEVELS:
        return (candidate, False)
    return (DEFAULT_LEVEL, True)


def configure_logging(level: str | None, *, force: bool = False) -> tuple[str, bool]:
    """Install the root femtologging handler at ``level``.

    Unknown levels fall back to ``INFO``; the second element of the result
    tells the caller to warn about it.
    """
    applied, invalid = normalize_log_level(level)
    basicConfig(level=applied, force=force)
    return (applied, invalid)


class _SupportsLog(typ.Protocol):
    def log(
        self,
        level: str,
        message: str,
        /,
        *,
        exc_info: object | None = None,
        stack_info: bool = False,
    ) -> str | None: ...


def _emit(
    logger: _SupportsLog, level: str, template: str, args: tuple[object, ...]
) -> None:
    # Interpolate only with arguments so literal "%" survives.
    message = template % args if args else template
    logger.log(level, message, stack_info=False)


def log_debug(logger: _SupportsLog, template: str, *args: object) -> None:
    """Log at DEBUG with ``%``-style arguments."""
    _emit(logger, "DEBUG", template, args)


def log_info(logger: _SupportsLog, template: str, *args: object) -> None:
    """Log at INFO with ``%``-style arguments."""
    _emit(logger, "INFO", template, args)


def log_warning(logger: _SupportsLog, template: str, *args: object) -> None:
    """Log at WARNING with ``%``-style arguments."""
    _emit(logger, "WARNING", template, args)


def log_error(logger: _SupportsLog, template: str, *args: object) -> None:
    """Log at ERROR with ``%``-style arguments."""
    _emit(logger, "ERROR", template, args)


__all__ = [
    "DEFAULT_LEVEL",
    "configure_logging",
    "get_logger",
    "log_debug",
    "log_error",
    "log_info",
    "log_warning",
    "normalize_log_level",
]
