"""
Unit tests for settings and logging setup.
"""

import json
import logging

import json_log_formatter
import pytest

from kii_sdk import KiiClient, __version__
from kii_sdk.config import SITE_URLS, KiiSettings, Site
from kii_sdk.logs import setup_logging


class TestSettings:
    """Tests for KiiSettings."""

    def test_defaults(self, monkeypatch):
        for name in ("KII_APP_ID", "KII_APP_KEY", "KII_SITE", "KII_CUSTOM_URL"):
            monkeypatch.delenv(name, raising=False)
        settings = KiiSettings()
        assert settings.site == Site.US
        assert settings.base_url == SITE_URLS["us"]
        assert settings.timeout == 30.0

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("KII_APP_ID", "env-app")
        monkeypatch.setenv("KII_APP_KEY", "env-key")
        monkeypatch.setenv("KII_SITE", "jp")
        settings = KiiSettings()
        assert settings.app_id == "env-app"
        assert settings.app_key == "env-key"
        assert settings.base_url == SITE_URLS["jp"]

    def test_custom_url(self):
        settings = KiiSettings(custom_url="http://localhost:8080/api/")
        assert settings.base_url == "http://localhost:8080/api"

    def test_client_exposes_version(self, client):
        assert client.sdk_version == __version__
        assert client.build_number


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_logger(self):
        sdk_logger = logging.getLogger("kii_sdk")
        handlers, level = sdk_logger.handlers[:], sdk_logger.level
        yield
        sdk_logger.handlers = handlers
        sdk_logger.setLevel(level)

    def test_text_format(self):
        sdk_logger = setup_logging(KiiSettings(log_level="debug"))
        assert sdk_logger.name == "kii_sdk"
        assert sdk_logger.level == logging.DEBUG
        assert len(sdk_logger.handlers) == 1
        assert not isinstance(sdk_logger.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_json_format(self):
        sdk_logger = setup_logging(KiiSettings(log_format="json"))
        formatter = sdk_logger.handlers[0].formatter
        assert isinstance(formatter, json_log_formatter.JSONFormatter)

        record = logging.LogRecord("kii_sdk.test", logging.INFO, __file__, 1, "hello", None, None)
        assert json.loads(formatter.format(record))["message"] == "hello"

    def test_called_twice_keeps_one_handler(self):
        setup_logging(KiiSettings())
        sdk_logger = setup_logging(KiiSettings())
        assert len(sdk_logger.handlers) == 1

    def test_unknown_level_falls_back_to_info(self):
        assert setup_logging(KiiSettings(log_level="chatty")).level == logging.INFO

    def test_client_logs_through_sdk_logger(self, client, caplog):
        with caplog.at_level("INFO", logger="kii_sdk"):
            client.user_with_username("alice123", "abc123$$").perform_registration()
        assert any(r.name.startswith("kii_sdk") for r in caplog.records)

    def test_client_default_settings(self, monkeypatch, transport):
        monkeypatch.setenv("KII_APP_ID", "env-app")
        client = KiiClient(transport=transport)
        assert client.app_path("/users") == "/apps/env-app/users"
