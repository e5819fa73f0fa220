"""Tests for configuration loading and validation."""

import pytest

from persona_sms.config import (
    DEFAULT_FALLBACK_REPLY,
    AppConfig,
    load_config,
    read_yaml,
    validate_config,
)
from persona_sms.exceptions import ConfigError


def test_defaults():
    config = AppConfig()
    assert config.context.budget_tokens == 4096
    assert config.context.recent_window == 10
    assert config.context.warm_top_k == 3
    assert config.context.warm_recency_days == 30
    assert config.context.cold_max == 3
    assert config.fallback_reply == DEFAULT_FALLBACK_REPLY


def test_env_substitution(tmp_path, monkeypatch):
    monkeypatch.setenv("PERSONA_SMS_TEST_KEY", "sk-from-env")
    path = tmp_path / "conf.yaml"
    path.write_text(
        "generation:\n"
        "  api_key: ${PERSONA_SMS_TEST_KEY}\n"
        "  model: ${PERSONA_SMS_UNSET_VAR}\n",
        encoding="utf-8",
    )
    data = read_yaml(path)
    assert data["generation"]["api_key"] == "sk-from-env"
    assert data["generation"]["model"] == "${PERSONA_SMS_UNSET_VAR}"


def test_load_config_with_personas(tmp_path):
    path = tmp_path / "conf.yaml"
    path.write_text(
        "server:\n"
        "  port: 9000\n"
        "context:\n"
        "  budget_tokens: 2000\n"
        "personas:\n"
        "  - slug: mia\n"
        "    name: Mia\n"
        "    phone_number: '+15550000001'\n"
        "    personality_prompt: You are Mia.\n"
        "    max_free_messages: 20\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.server.port == 9000
    assert config.context.budget_tokens == 2000
    assert config.personas[0].max_free_messages == 20


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        read_yaml("/nonexistent/conf.yaml")


def test_invalid_values_raise_config_error():
    with pytest.raises(ConfigError) as exc_info:
        validate_config({"context": {"budget_tokens": 0}})
    assert "budget_tokens" in str(exc_info.value)


def test_storage_path_traversal_rejected():
    with pytest.raises(ConfigError):
        validate_config({"storage": {"sqlite_db_path": "../outside.db"}})


def test_no_path_gives_defaults():
    assert load_config(None) == AppConfig()


def test_unresolved_admin_key_disables_admin():
    config = validate_config({"server": {"admin_api_key": "${ADMIN_API_KEY}"}})
    assert config.server.admin_api_key == ""
