"""Tests for setup_logging."""

import logging
import logging.handlers
from pathlib import Path

import pytest

from apm.logging_config import setup_logging


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    saved_level = root.level
    saved_handlers = root.handlers[:]
    yield root
    for h in root.handlers[:]:
        if h not in saved_handlers:
            root.removeHandler(h)
            h.close()
    root.setLevel(saved_level)
    logging.getLogger("apm.events.bus").setLevel(logging.NOTSET)


def test_file_and_console_handlers(tmp_path: Path, restore_root: logging.Logger) -> None:
    handlers = setup_logging(
        tmp_path, {"logging": {"file": "logs/apm.log", "level": "debug", "max_bytes": 1024}}
    )

    assert len(handlers) == 2
    file_handler = handlers[0]
    assert isinstance(file_handler, logging.handlers.RotatingFileHandler)
    assert file_handler.maxBytes == 1024
    assert (tmp_path / "logs").is_dir()
    assert restore_root.level == logging.DEBUG
    assert all(h in restore_root.handlers for h in handlers)


def test_empty_file_disables_file_handler(tmp_path: Path, restore_root: logging.Logger) -> None:
    handlers = setup_logging(tmp_path, {"logging": {"file": "", "log_to_console": True}})

    assert len(handlers) == 1
    assert not isinstance(handlers[0], logging.FileHandler)
    assert not (tmp_path / "logs").exists()


def test_repeated_setup_replaces_only_own_handlers(
    tmp_path: Path, restore_root: logging.Logger
) -> None:
    foreign = logging.NullHandler()
    restore_root.addHandler(foreign)

    first = setup_logging(tmp_path, {"logging": {"file": ""}})
    second = setup_logging(tmp_path, {"logging": {"file": ""}})

    assert foreign in restore_root.handlers
    assert first[0] not in restore_root.handlers
    assert second[0] in restore_root.handlers
    restore_root.removeHandler(foreign)


def test_env_level_and_per_logger_levels(
    tmp_path: Path, restore_root: logging.Logger, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("APM_LOG_LEVEL", "warning")

    setup_logging(
        tmp_path,
        {"logging": {"file": "", "level": "DEBUG", "loggers": {"apm.events.bus": "ERROR"}}},
    )

    assert restore_root.level == logging.WARNING
    assert logging.getLogger("apm.events.bus").level == logging.ERROR


def test_unknown_level_falls_back_to_info(tmp_path: Path, restore_root: logging.Logger) -> None:
    setup_logging(tmp_path, {"logging": {"file": "", "level": "chatty"}})
    assert restore_root.level == logging.INFO
