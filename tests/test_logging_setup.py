from __future__ import annotations

import logging
from pathlib import Path

import pytest

from taskpilot.utils import logging as logging_utils


@pytest.fixture
def restore_root_logger(monkeypatch):
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    monkeypatch.setattr(logging_utils, "_CONFIGURED", False)
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(False)


def test_setup_logging_writes_to_directory(tmp_path: Path, restore_root_logger) -> None:
    path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False)

    logging.getLogger("taskpilot.test").info("hello from test")

    assert path == tmp_path / "taskpilot.log"
    assert logging_utils.get_log_path() == path
    assert "hello from test" in path.read_text(encoding="utf-8")
    assert logging.getLogger("openai").level == logging.WARNING


def test_setup_logging_honours_env_dir(tmp_path: Path, monkeypatch, restore_root_logger) -> None:
    monkeypatch.setenv("TASKPILOT_LOG_DIR", str(tmp_path / "env-logs"))

    path = logging_utils.setup_logging(console=False)

    assert path.parent == tmp_path / "env-logs"
    assert logging_utils.setup_logging(console=False, log_dir=tmp_path) == path


def test_resolve_level(monkeypatch) -> None:
    monkeypatch.delenv("TASKPILOT_LOG_LEVEL", raising=False)
    assert logging_utils.resolve_level(None) == logging.INFO
    assert logging_utils.resolve_level("debug") == logging.DEBUG
    assert logging_utils.resolve_level("15") == 15
    assert logging_utils.resolve_level("nonsense") == logging.INFO

    monkeypatch.setenv("TASKPILOT_LOG_LEVEL", "warning")
    assert logging_utils.resolve_level(None) == logging.WARNING
