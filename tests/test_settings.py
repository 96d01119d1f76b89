"""
Unit tests for configuration loading.
"""

import logging

import pytest

from settings import Settings, load_settings

ENV_VARS = (
    "BUNNY_API_KEY", "BUNNY_LIBRARY_ID", "BUNNY_PULL_ZONE", "BUNNY_COLLECTION_PREFIX",
    "BUNNY_MAX_ATTEMPTS", "BUNNY_TIMEOUT", "BUNNY_UPLOAD_TIMEOUT", "BUNNY_REDIS_URL",
    "BUNNY_META_FILE", "BUNNY_DEBUG", "BUNNY_ACCOUNT_API_KEY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.mark.unit
class TestLoadSettings:
    """Test environment and .env precedence."""

    def test_defaults(self):
        """Test an empty environment gives the defaults."""
        assert load_settings({}) == Settings()

    def test_file_values_used(self):
        """Test .env values fill in missing variables."""
        s = load_settings({"BUNNY_API_KEY": "file-key", "BUNNY_MAX_ATTEMPTS": "5", "BUNNY_DEBUG": "yes"})

        assert s.api_key == "file-key"
        assert s.max_attempts == 5
        assert s.debug is True

    def test_environment_wins(self, monkeypatch):
        """Test process variables override the .env file."""
        monkeypatch.setenv("BUNNY_API_KEY", "env-key")

        assert load_settings({"BUNNY_API_KEY": "file-key"}).api_key == "env-key"

    def test_bad_numbers_fall_back(self):
        """Test non-numeric tunables keep their defaults."""
        s = load_settings({"BUNNY_TIMEOUT": "soon", "BUNNY_UPLOAD_TIMEOUT": ""})

        assert s.timeout == 30
        assert s.upload_timeout == 300

    def test_bad_number_is_reported(self, caplog):
        """Test a non-numeric tunable is logged rather than silently ignored."""
        with caplog.at_level(logging.WARNING, logger="settings"):
            load_settings({"BUNNY_TIMEOUT": "soon"})

        assert "BUNNY_TIMEOUT='soon' is not a whole number; using 30" in caplog.text

    def test_account_key(self):
        """Test the account API key is read separately from the library key."""
        s = load_settings({"BUNNY_API_KEY": "lib-key", "BUNNY_ACCOUNT_API_KEY": "acct-key"})

        assert s.api_key == "lib-key"
        assert s.account_key == "acct-key"
