"""Tests for the structured logging helpers"""

import logging

import structlog

from hedgegrid.utils.logger import LoggerMixin, get_logger, log_context, setup_logging


class TestSetupLogging:
    def test_creates_log_files(self, tmp_path):
        setup_logging(log_level="DEBUG", log_dir=tmp_path, log_to_console=False)

        get_logger("test").info("file_logging_works")

        assert (tmp_path / "hedgegrid.log").exists()
        assert (tmp_path / "error.log").exists()
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(log_level="NOPE", log_to_file=False)
        assert logging.getLogger().level == logging.INFO

    def test_quiets_third_party_loggers(self):
        setup_logging(log_to_file=False)
        assert logging.getLogger("ccxt").level == logging.WARNING


class TestLogContext:
    def test_binds_and_unbinds(self):
        structlog.contextvars.clear_contextvars()

        with log_context(strategy_id=7, symbol="BTCUSDT"):
            bound = structlog.contextvars.get_contextvars()
            assert bound == {"strategy_id": 7, "symbol": "BTCUSDT"}

        assert structlog.contextvars.get_contextvars() == {}


class TestLoggerMixin:
    def test_logger_available(self):
        class Component(LoggerMixin):
            pass

        assert Component().logger is not None
