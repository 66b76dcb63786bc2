"""Unit tests for logging configuration module.

Tests verify that the logging configuration functions work correctly with different
scenarios including various log levels, formats, and file logging options.
"""

import logging
from unittest.mock import patch

import pytest

from capmesh.core.logging_config import (
    DETAILED_FORMAT,
    JSON_FORMAT,
    MODULE_LOG_LEVELS,
    SIMPLE_FORMAT,
    get_logger,
    setup_logging,
)


def _console_handler():
    root_logger = logging.getLogger()
    return next(
        (
            h
            for h in root_logger.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ),
        None,
    )


@pytest.fixture(autouse=True)
def _restore_root_handlers():
    """setup_logging replaces root handlers; put pytest's back afterwards."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(level)


class TestSetupLoggingLogLevels:
    """Test setup_logging with different log levels."""

    @pytest.mark.parametrize(
        "log_level,expected_level",
        [
            ("DEBUG", logging.DEBUG),
            ("INFO", logging.INFO),
            ("WARNING", logging.WARNING),
            ("ERROR", logging.ERROR),
            ("critical", logging.CRITICAL),
        ],
    )
    def test_setup_logging_with_different_levels(self, log_level, expected_level):
        """Test setup_logging configures correct log level."""
        setup_logging(log_level=log_level, enable_file=False)

        console_handler = _console_handler()
        assert console_handler is not None
        assert console_handler.level == expected_level

    def test_root_logger_level_is_debug(self):
        """Root logger captures everything, handlers filter."""
        setup_logging(log_level="WARNING", enable_file=False)
        assert logging.getLogger().level == logging.DEBUG


class TestSetupLoggingFormats:
    """Test setup_logging with different log formats."""

    @pytest.mark.parametrize(
        "log_format,expected_format",
        [
            ("simple", SIMPLE_FORMAT),
            ("detailed", DETAILED_FORMAT),
            ("json", JSON_FORMAT),
            ("unknown", DETAILED_FORMAT),
        ],
    )
    def test_setup_logging_with_different_formats(self, log_format, expected_format):
        setup_logging(log_format=log_format, enable_file=False)

        console_handler = _console_handler()
        assert console_handler is not None
        assert console_handler.formatter._fmt == expected_format
        assert console_handler.formatter.datefmt == "%Y-%m-%d %H:%M:%S"


class TestSetupLoggingFileHandling:
    """Test setup_logging file logging functionality."""

    def test_file_handler_created_when_enabled(self, tmp_path):
        log_dir = tmp_path / "new_logs"
        with patch("capmesh.core.logging_config.LOG_FILE_DIR", str(log_dir)), patch(
            "capmesh.core.logging_config.ENABLE_FILE_LOGGING", True
        ):
            setup_logging(log_level="ERROR", enable_file=True)

        file_handler = next((h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)), None)
        assert file_handler is not None
        # File handler always logs DEBUG
        assert file_handler.level == logging.DEBUG
        assert (log_dir / "capmesh.log").exists()

    def test_file_logging_off_by_configuration(self, tmp_path):
        with patch("capmesh.core.logging_config.LOG_FILE_DIR", str(tmp_path)), patch(
            "capmesh.core.logging_config.ENABLE_FILE_LOGGING", False
        ):
            setup_logging(enable_file=True)

        assert not any(isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)

    def test_file_logging_disabled_by_argument(self):
        setup_logging(enable_file=False)
        assert not any(isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)


class TestSetupLoggingHandlerManagement:
    """Test setup_logging handler management."""

    def test_repeated_setup_does_not_duplicate_handlers(self):
        setup_logging(enable_file=False)
        setup_logging(enable_file=False)
        assert len(logging.getLogger().handlers) == 1


class TestSetupLoggingModuleSpecificLevels:
    """Test module-specific log level configuration."""

    @pytest.mark.parametrize(
        "module_name,expected_level",
        [
            ("capmesh.linker", logging.DEBUG),
            ("capmesh.linker.cache", logging.INFO),
            ("capmesh.linker.repos", logging.INFO),
            ("capmesh.core", logging.INFO),
            ("sqlalchemy", logging.WARNING),
            ("httpx", logging.WARNING),
        ],
    )
    def test_module_specific_log_levels(self, module_name, expected_level):
        setup_logging(enable_file=False)
        assert logging.getLogger(module_name).level == expected_level

    def test_all_module_log_levels_configured(self):
        setup_logging(enable_file=False)

        for module_name, expected_level_str in MODULE_LOG_LEVELS.items():
            expected_level = getattr(logging, expected_level_str)
            assert logging.getLogger(module_name).level == expected_level


class TestGetLogger:
    """Test get_logger function."""

    def test_get_logger_returns_named_logger(self):
        logger = get_logger("capmesh.linker.resolver")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "capmesh.linker.resolver"

    def test_get_logger_same_name_returns_same_instance(self):
        assert get_logger("same_module") is get_logger("same_module")
