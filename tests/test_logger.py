# tests/test_logger.py
import logging

import pytest

from bluegreen.logger import get_logger


@pytest.fixture
def names():
    names = ("bluegreen-logtest", "service-logtest")
    yield names
    for name in names:
        lg = logging.getLogger(name)
        for handler in list(lg.handlers):
            handler.close()
            lg.removeHandler(handler)


def test_entry_point_loggers_share_handlers(names, tmp_path):
    logger = get_logger(names[0], "DEBUG", str(tmp_path), also=(names[1],))
    api_logger = logging.getLogger(names[1])

    assert logger.level == logging.DEBUG
    assert api_logger.level == logging.DEBUG
    assert logger.handlers == api_logger.handlers
    assert len(logger.handlers) == 2

    api_logger.info("switch requested")
    for handler in logger.handlers:
        handler.flush()
    assert "switch requested" in (tmp_path / "orchestrator.log").read_text(encoding="utf-8")


def test_configuration_happens_once(names):
    first = get_logger(names[0], also=(names[1],))
    second = get_logger(names[0], also=(names[1],))
    assert first is second
    assert len(first.handlers) == 1


def test_env_level_override(names, monkeypatch):
    monkeypatch.setenv("BLUEGREEN_LOG_LEVEL", "warning")
    logger = get_logger(names[0], "DEBUG", also=(names[1],))
    assert logger.level == logging.WARNING
    assert logging.getLogger("urllib3").level >= logging.WARNING
