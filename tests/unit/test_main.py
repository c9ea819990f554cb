"""Unit tests for the command-line entry point and logging setup."""
import logging
from decimal import Decimal
from unittest.mock import patch

import main
from tradejournal.core.config import LoggingConfig, MarketDataConfig
from tradejournal.core.models import OutcomeStatus, PortfolioMetrics
from tradejournal.utils.logging_config import add_app_name, setup_logging


class TestCheckConfiguration:
    """Test configuration checks."""

    def test_missing_script_url_reported(self):
        market_data = MarketDataConfig(provider="script", script_url="")

        with patch.object(main.journal_config, "market_data", market_data):
            result = main.check_configuration()

        assert not result["valid"]
        assert "MARKET_DATA_SCRIPT_URL is not set" in result["issues"]

    def test_exchange_provider_valid(self):
        market_data = MarketDataConfig(provider="exchange")

        with patch.object(main.journal_config, "market_data", market_data):
            result = main.check_configuration()

        assert result["provider"] == "exchange"


class TestSummarize:
    """Test the JSON summary of a metrics run."""

    def test_summary_fields(self):
        metrics = PortfolioMetrics(
            user_id="user-1",
            starting_capital=Decimal("25000"),
            current_capital=Decimal("25500"),
            status=OutcomeStatus.DEGRADED,
            warnings=["stale quotes for AAPL"],
        )

        summary = main.summarize(metrics)

        assert summary["status"] == "degraded"
        assert summary["current_capital"] == "25500"
        assert summary["current_streak"] == 0
        assert summary["warnings"] == ["stale quotes for AAPL"]


class TestSetupLogging:
    """Test structured logging setup."""

    def test_file_handler_added(self, tmp_path):
        log_file = tmp_path / "logs" / "journal.log"
        root_logger = logging.getLogger()
        handlers_before = list(root_logger.handlers)

        try:
            setup_logging(LoggingConfig(log_level="DEBUG", log_file=str(log_file)))

            added = [h for h in root_logger.handlers if h not in handlers_before]
            assert any(isinstance(h, logging.FileHandler) for h in added)
            assert log_file.parent.exists()
        finally:
            for handler in list(root_logger.handlers):
                if handler not in handlers_before:
                    root_logger.removeHandler(handler)
                    handler.close()

    def test_no_log_file(self):
        root_logger = logging.getLogger()
        handlers_before = list(root_logger.handlers)

        try:
            setup_logging(LoggingConfig(log_level="INFO", log_file=None))

            added = [h for h in root_logger.handlers if h not in handlers_before]
            assert not any(isinstance(h, logging.FileHandler) for h in added)
        finally:
            for handler in list(root_logger.handlers):
                if handler not in handlers_before:
                    root_logger.removeHandler(handler)


class TestAddAppName:
    """Test the application name processor."""

    def test_tags_event(self):
        event = add_app_name(None, "info", {"event": "engine.initialized"})

        assert event == {"event": "engine.initialized", "app": "tradejournal"}

    def test_keeps_explicit_app(self):
        event = add_app_name(None, "info", {"event": "x", "app": "importer"})

        assert event["app"] == "importer"
