"""Tests for mofasvi.core.logger_utils module."""

import logging
from unittest.mock import Mock

import pytest

from mofasvi.core.logger_utils import LogLevel, configure_logging, ensure_logger


@pytest.mark.unit
class TestEnsureLogger:
    """Test ensure_logger function."""

    def test_returns_given_logger(self):
        mock_logger = Mock()
        assert ensure_logger(mock_logger) is mock_logger

    def test_falls_back_to_named_logger(self):
        logger = ensure_logger(None, name="mofasvi.fallback")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "mofasvi.fallback"


@pytest.mark.unit
class TestConfigureLogging:
    """Test configure_logging function."""

    def test_sets_package_level(self):
        logger = configure_logging("debug")
        assert logger.name == "mofasvi"
        assert logger.level == logging.DEBUG
        configure_logging("INFO")

    def test_invalid_level(self):
        with pytest.raises(ValueError, match="log_level"):
            configure_logging("CHATTY")

    def test_log_level_values(self):
        assert {level.value for level in LogLevel} == {
            "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"
        }
