"""Unit tests for the femtologging helpers."""

from __future__ import annotations

import pytest

from devcluster.logging import (
    configure_logging,
    log_debug,
    log_error,
    log_info,
    log_warning,
    normalize_log_level,
)


class _RecordingLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str]] = []

    def log(
        self,
        level: str,
        message: str,
        /,
        *,
        exc_info: object | None = None,
        stack_info: bool = False,
    ) -> str:
        assert exc_info is None
        assert stack_info is False
        self.records.append((level, message))
        return message


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("debug", ("DEBUG", False)),
        ("  Warn ", ("WARN", False)),
        ("TRACE", ("TRACE", False)),
        (None, ("INFO", True)),
        ("", ("INFO", True)),
        ("verbose", ("INFO", True)),
    ],
)
def test_normalize_log_level(raw: str | None, expected: tuple[str, bool]) -> None:
    """Known names are upper-cased; anything else falls back to INFO."""
    assert normalize_log_level(raw) == expected


def test_configure_logging_installs_root_handler(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The normalised level and force flag reach basicConfig."""
    seen: list[dict[str, object]] = []
    monkeypatch.setattr(
        "devcluster.logging.basicConfig", lambda **kwargs: seen.append(kwargs)
    )

    assert configure_logging("chatty", force=True) == ("INFO", True)
    assert seen == [{"level": "INFO", "force": True}]


def test_levels_and_interpolation() -> None:
    """Each helper logs at its own level with %-style arguments."""
    logger = _RecordingLogger()

    log_debug(logger, "checking %s", "kubectl")
    log_info(logger, "context %s", "k3d-dev")
    log_warning(logger, "%d retries left", 3)
    log_error(logger, "failed: %s", "boom")

    assert logger.records == [
        ("DEBUG", "checking kubectl"),
        ("INFO", "context k3d-dev"),
        ("WARNING", "3 retries left"),
        ("ERROR", "failed: boom"),
    ]


def test_template_without_args_is_not_interpolated() -> None:
    """A literal percent sign survives when no arguments are given."""
    logger = _RecordingLogger()

    log_info(logger, "100% done")

    assert logger.records == [("INFO", "100% done")]
