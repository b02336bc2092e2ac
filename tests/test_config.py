"""Tests for configuration and logging setup."""

import json
import logging
from pathlib import Path

import pytest

from typed_catalog import CatalogConfig, configure_logging


@pytest.fixture
def restore_logger():
    package_logger = logging.getLogger("typed_catalog")
    handlers, level = package_logger.handlers[:], package_logger.level
    yield package_logger
    package_logger.handlers = handlers
    package_logger.setLevel(level)


class TestCatalogConfig:
    """Tests for CatalogConfig."""

    def test_defaults(self):
        """Test the default settings."""
        config = CatalogConfig()
        assert config.log_level == "INFO"
        assert config.log_format == "text"
        assert config.journal_dir is None
        assert config.loop_max_depth is None

    def test_from_env(self, monkeypatch, tmp_path):
        """Test reading settings from the environment."""
        monkeypatch.setenv("TYPED_CATALOG_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("TYPED_CATALOG_LOG_FORMAT", "JSON")
        monkeypatch.setenv("TYPED_CATALOG_JOURNAL_DIR", str(tmp_path))
        monkeypatch.setenv("TYPED_CATALOG_LOOP_MAX_DEPTH", "5")

        config = CatalogConfig.from_env()
        assert config.log_level == "DEBUG"
        assert config.log_format == "json"
        assert config.journal_dir == Path(tmp_path)
        assert config.loop_max_depth == 5

    def test_from_empty_env(self, monkeypatch):
        """Test that an empty environment gives the defaults."""
        for name in ("LOG_LEVEL", "LOG_FORMAT", "JOURNAL_DIR", "LOOP_MAX_DEPTH"):
            monkeypatch.delenv(f"TYPED_CATALOG_{name}", raising=False)
        assert CatalogConfig.from_env() == CatalogConfig()

    def test_invalid_log_format(self):
        """Test rejecting an unknown log format."""
        with pytest.raises(ValueError):
            CatalogConfig(log_format="xml")

    def test_invalid_loop_depth(self, monkeypatch):
        """Test rejecting a loop depth below one."""
        monkeypatch.setenv("TYPED_CATALOG_LOOP_MAX_DEPTH", "0")
        with pytest.raises(ValueError):
            CatalogConfig.from_env()

    def test_frozen(self):
        """Test that settings cannot be changed."""
        config = CatalogConfig()
        with pytest.raises(AttributeError):
            config.log_level = "DEBUG"


class TestConfigureLogging:
    """Tests for configure_logging."""

    def make_record(self):
        return logging.LogRecord("typed_catalog.audit", logging.INFO, __file__, 1, "create DB abc", None, None)

    def test_text_format(self, restore_logger):
        """Test the text log format."""
        handler = configure_logging(CatalogConfig(log_level="DEBUG"))
        assert restore_logger.handlers == [handler]
        assert restore_logger.level == logging.DEBUG
        assert "typed_catalog.audit - INFO - create DB abc" in handler.format(self.make_record())

    def test_json_format(self, restore_logger):
        """Test the JSON log format."""
        handler = configure_logging(CatalogConfig(log_format="json"))
        payload = json.loads(handler.format(self.make_record()))
        assert payload["message"] == "create DB abc"

    def test_reconfigure_replaces_handler(self, restore_logger):
        """Test that configuring again replaces the handler."""
        configure_logging(CatalogConfig())
        handler = configure_logging(CatalogConfig(log_level="warning"))
        assert restore_logger.handlers == [handler]
        assert restore_logger.level == logging.WARNING
