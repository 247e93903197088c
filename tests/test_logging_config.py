"""Tests for logging setup and the error log."""

import logging

import pytest

from trusthash.errors import (
    FeatureNotImplemented,
    FormatError,
    NotFoundError,
    PrivateAddressError,
    UpstreamTimeoutError,
    ValidationError,
    log_exception,
)
from trusthash.logging_config import configure_logging, configure_ops_log


@pytest.fixture
def app_logger():
    logger = logging.getLogger("trusthash")
    saved = (list(logger.handlers), logger.level)
    yield logger
    for h in list(logger.handlers):
        if h not in saved[0]:
            logger.removeHandler(h)
            h.close()
    logger.setLevel(saved[1])


class TestConfigureLogging:
    def test_sets_level_and_quiets_libraries(self, app_logger):
        configure_logging("warning")
        assert app_logger.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_verbose_opens_libraries(self, app_logger):
        configure_logging("debug", verbose=True)
        assert logging.getLogger("httpcore").level == logging.DEBUG
        configure_logging("info")

    def test_single_stderr_handler(self, app_logger):
        configure_logging()
        count = len(app_logger.handlers)
        configure_logging()
        assert len(app_logger.handlers) == count

    def test_ops_log(self, app_logger, tmp_path):
        handler = configure_ops_log(tmp_path / "ops")
        logging.getLogger("trusthash.test").info("hello ops")
        handler.flush()
        assert "hello ops" in (tmp_path / "ops" / "trusthash-ops.log").read_text()


class TestErrors:
    def test_status_codes(self):
        assert ValidationError("x").status_code == 400
        assert FormatError("x").status_code == 400
        assert PrivateAddressError("x").status_code == 400
        assert NotFoundError("x").status_code == 404
        assert FeatureNotImplemented("x").status_code == 501
        assert UpstreamTimeoutError("x").status_code == 504

    def test_to_dict(self):
        assert NotFoundError("gone").to_dict() == {"success": False, "error": "gone", "code": "not_found"}

    def test_log_exception(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TRUSTHASH_LOG_DIR", str(tmp_path))
        try:
            raise RuntimeError("traced")
        except RuntimeError as e:
            path = log_exception(e, "unit test")
        text = path.read_text()
        assert "unit test RuntimeError: traced" in text
        assert "Traceback" in text
