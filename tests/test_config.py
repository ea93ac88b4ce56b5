"""Tests for configuration parsing."""

from __future__ import annotations

import pytest

from medcore import config


class TestNumericEnv:
    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("MAX_TOOL_LOOPS", raising=False)
        assert config._env_int("MAX_TOOL_LOOPS", "5") == 5

    def test_env_overrides_default(self, monkeypatch):
        monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "12.5")
        assert config._env_float("LLM_TIMEOUT_SECONDS", "30") == 12.5

    def test_malformed_int_names_the_variable(self, monkeypatch):
        monkeypatch.setenv("HISTORY_WINDOW", "ten")
        with pytest.raises(ValueError, match="HISTORY_WINDOW"):
            config._env_int("HISTORY_WINDOW", "10")

    def test_malformed_float_names_the_variable(self, monkeypatch):
        monkeypatch.setenv("MODEL_TEMPERATURE", "warm")
        with pytest.raises(ValueError, match="MODEL_TEMPERATURE"):
            config._env_float("MODEL_TEMPERATURE", "0.1")


class TestRequiredEnv:
    def test_missing_value_raises(self, monkeypatch):
        monkeypatch.delenv("SOME_SECRET", raising=False)
        monkeypatch.setattr(config, "_ON_AWS", False)
        with pytest.raises(OSError, match="SOME_SECRET"):
            config._require_env("SOME_SECRET")

    def test_placeholder_value_is_rejected(self, monkeypatch):
        monkeypatch.setenv("SOME_SECRET", "your_key_here")
        monkeypatch.setattr(config, "_ON_AWS", False)
        with pytest.raises(OSError):
            config._require_env("SOME_SECRET")

    def test_ssm_fallback_on_aws(self, monkeypatch):
        monkeypatch.delenv("SOME_SECRET", raising=False)
        monkeypatch.setattr(config, "_ON_AWS", True)
        monkeypatch.setattr(config, "_get_ssm_parameter", lambda name: f"ssm-{name}")
        assert config._require_env("SOME_SECRET") == "ssm-SOME_SECRET"

    def test_defaults_loaded(self):
        assert config.MAX_TOOL_LOOPS >= 1
        assert config.OTP_DEMO_CODE == "123456"
        assert config.STORE_LATENCY_MS == 0
