"""
Unit tests for settings validation and logging setup.
"""

import json
import logging

import pytest
from pydantic import ValidationError as SettingsError

from rumbledore.config import Settings
from rumbledore.logging_config import JsonFormatter, configure_logging


class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.threshold_auto_approve_high == 0.90
        assert settings.threshold_manual_review_low == 0.25
        assert settings.weight_name_similarity == 0.40

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("RESOLUTION_BATCH_SIZE", "25")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        settings = Settings(_env_file=None)
        assert settings.resolution_batch_size == 25
        assert settings.log_level == "DEBUG"

    def test_bands_must_descend(self):
        with pytest.raises(SettingsError):
            Settings(_env_file=None, threshold_auto_approve=0.95)

    def test_threshold_range(self):
        with pytest.raises(SettingsError):
            Settings(_env_file=None, threshold_manual_review_low=-0.1)

    def test_negative_weight(self):
        with pytest.raises(SettingsError):
            Settings(_env_file=None, weight_stat_similarity=-1)

    def test_matcher_weights_not_both_zero(self):
        with pytest.raises(SettingsError):
            Settings(_env_file=None, matcher_token_weight=0, matcher_edit_weight=0)

    def test_log_format(self):
        assert Settings(_env_file=None, log_format="JSON").log_format == "json"
        with pytest.raises(SettingsError):
            Settings(_env_file=None, log_format="xml")


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLogging:

    def test_json_formatter(self):
        record = logging.LogRecord(
            "rumbledore.identity.resolver", logging.INFO, __file__, 1,
            "Resolved %d records", (3,), None,
        )
        payload = json.loads(JsonFormatter().format(record))
        assert payload["level"] == "INFO"
        assert payload["logger"] == "rumbledore.identity.resolver"
        assert payload["message"] == "Resolved 3 records"

    def test_configure_logging_installs_one_handler(self, restore_root_logger):
        settings = Settings(_env_file=None, log_level="WARNING", log_format="json")
        configure_logging(settings)
        configure_logging(settings)

        root = restore_root_logger
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.WARNING
