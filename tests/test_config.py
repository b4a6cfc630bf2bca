"""Tests for engine configuration from the environment."""

import logging

import pytest

from trellis.config import EngineConfig, configure_logging


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test without TRELLIS_* variables."""
    for name in ("TRELLIS_MAX_EVAL_DEPTH", "TRELLIS_MAX_PROPAGATION_DEPTH", "TRELLIS_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig.from_env()

        assert config.max_eval_depth == 50
        assert config.max_propagation_depth == 100
        assert config.log_level == "WARNING"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TRELLIS_MAX_EVAL_DEPTH", "10")
        monkeypatch.setenv("TRELLIS_MAX_PROPAGATION_DEPTH", "7")
        monkeypatch.setenv("TRELLIS_LOG_LEVEL", "debug")

        config = EngineConfig.from_env()

        assert config.max_eval_depth == 10
        assert config.max_propagation_depth == 7
        assert config.log_level == "DEBUG"

    def test_blank_value_uses_default(self, monkeypatch):
        monkeypatch.setenv("TRELLIS_MAX_EVAL_DEPTH", "  ")

        assert EngineConfig.from_env().max_eval_depth == 50

    def test_non_integer(self, monkeypatch):
        monkeypatch.setenv("TRELLIS_MAX_EVAL_DEPTH", "deep")

        with pytest.raises(ValueError, match="TRELLIS_MAX_EVAL_DEPTH must be an integer"):
            EngineConfig.from_env()

    def test_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("TRELLIS_MAX_PROPAGATION_DEPTH", "0")

        with pytest.raises(ValueError, match="at least 1"):
            EngineConfig.from_env()

    def test_unknown_log_level(self, monkeypatch):
        monkeypatch.setenv("TRELLIS_LOG_LEVEL", "LOUD")

        with pytest.raises(ValueError, match="TRELLIS_LOG_LEVEL"):
            EngineConfig.from_env()

    def test_configure_logging_sets_package_level(self):
        configure_logging("DEBUG")

        assert logging.getLogger("trellis").level == logging.DEBUG

        configure_logging("WARNING")
