"""Tests for toolstream/config.py -- defaults, env loading, validation."""

import pytest
from pydantic import ValidationError

from toolstream.config import DEFAULT_SYSTEM_PROMPT, Settings

from conftest import make_settings


class TestSettings:
    def test_defaults(self):
        settings = make_settings()
        assert settings.model == "claude-sonnet-4-20250514"
        assert settings.max_tokens == 8192
        assert settings.max_turns == 10
        assert settings.system_prompt == DEFAULT_SYSTEM_PROMPT
        assert settings.api_base_url == "https://api.anthropic.com"
        assert settings.confirm_timeout is None

    def test_prefixed_env(self, monkeypatch):
        monkeypatch.setenv("TOOLSTREAM_MODEL", "claude-env")
        monkeypatch.setenv("TOOLSTREAM_MAX_TOKENS", "512")
        settings = Settings(_env_file=None)
        assert settings.model == "claude-env"
        assert settings.max_tokens == 512

    def test_credentials_from_unprefixed_env(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        monkeypatch.delenv("ANTHROPIC_AUTH_TOKEN", raising=False)
        settings = Settings(_env_file=None)
        assert settings.anthropic_api_key == "sk-env"
        assert settings.has_credentials

    def test_no_credentials(self):
        assert not make_settings(ANTHROPIC_API_KEY="").has_credentials

    @pytest.mark.parametrize("field", ["max_tokens", "max_turns", "tick_interval"])
    def test_non_positive_limits_rejected(self, field):
        with pytest.raises(ValidationError):
            make_settings(**{field: 0})
