"""Tests for config/config_loader.py."""

from pathlib import Path

import pytest
import yaml

from config.config_loader import (
    CALL_SITES,
    AppConfig,
    CallSettings,
    ModelConfig,
    PromptsConfig,
    load_config,
)

_PAIR = {"system": "sys", "user": "user {p1_answers}"}


def _prompts() -> dict:
    return {
        "labels": {"what_happened": "What happened"},
        "fallbacks": {"retry": "Retry please."},
        **{name: dict(_PAIR) for name in (
            "summary", "briefing", "dispute_points", "response_summary",
            "context_summary", "fact_list", "sanitize", "verdict",
        )},
    }


@pytest.fixture
def minimal_settings(tmp_path: Path) -> Path:
    """Write a minimal valid settings.yaml to a temp path."""
    settings = {
        "defaults": {
            "provider": "claude",
            "data_dir": "./data",
            "output_dir": "./output",
        },
        "models": {
            "claude": {
                "sdk": "anthropic",
                "model": "claude-sonnet-4-5",
                "api_key_env": "TEST_CLAUDE_KEY",
                "timeout_sec": 120,
                "max_tokens": 8192,
            }
        },
        "generation": {site: {"temperature": 0.5, "max_tokens": 1000} for site in CALL_SITES},
        "context_analysis": {"system": "ctx", "user": "{previous}{stage}{stage_input}"},
        "prompts": {"en": _prompts()},
    }
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.dump(settings), encoding="utf-8")
    return path


def test_load_config_returns_app_config(minimal_settings):
    config = load_config(minimal_settings)
    assert isinstance(config, AppConfig)


def test_load_config_defaults(minimal_settings):
    config = load_config(minimal_settings)
    assert config.defaults.provider == "claude"
    assert config.defaults.language == "en"
    assert config.defaults.workflow == "simple"
    assert config.defaults.visibility_mode == "open"
    assert config.defaults.allow_unassessed_judgment is False
    assert isinstance(config.defaults.data_dir, Path)


def test_load_config_models(minimal_settings):
    config = load_config(minimal_settings)
    assert isinstance(config.models["claude"], ModelConfig)
    assert config.models["claude"].model == "claude-sonnet-4-5"
    assert config.models["claude"].base_url is None


def test_load_config_generation_settings(minimal_settings):
    config = load_config(minimal_settings)
    assert set(CALL_SITES) <= set(config.generation)
    assert config.generation["verdict"] == CallSettings(temperature=0.5, max_tokens=1000)


def test_load_config_attachment_defaults(minimal_settings):
    config = load_config(minimal_settings)
    assert config.attachments.max_file_bytes == 10 * 1024 * 1024
    assert config.attachments.max_text_chars == 5000
    assert config.attachments.allowed_mime_types == []


def test_load_config_missing_call_site(minimal_settings):
    raw = yaml.safe_load(minimal_settings.read_text(encoding="utf-8"))
    del raw["generation"]["verdict"]
    minimal_settings.write_text(yaml.dump(raw), encoding="utf-8")
    with pytest.raises(ValueError, match="verdict"):
        load_config(minimal_settings)


def test_load_config_requires_english_prompts(minimal_settings):
    raw = yaml.safe_load(minimal_settings.read_text(encoding="utf-8"))
    raw["prompts"] = {"pt": raw["prompts"]["en"]}
    minimal_settings.write_text(yaml.dump(raw), encoding="utf-8")
    with pytest.raises(ValueError, match="English"):
        load_config(minimal_settings)


def test_prompts_for_falls_back_to_english(minimal_settings):
    config = load_config(minimal_settings)
    assert isinstance(config.prompts_for("pt"), PromptsConfig)
    assert config.prompts_for("pt") is config.prompts["en"]


def test_load_config_available_providers_with_key(minimal_settings, monkeypatch):
    monkeypatch.setenv("TEST_CLAUDE_KEY", "sk-test-key")
    config = load_config(minimal_settings)
    assert "claude" in config.available_providers


def test_load_config_no_available_providers_without_key(minimal_settings, monkeypatch):
    monkeypatch.delenv("TEST_CLAUDE_KEY", raising=False)
    config = load_config(minimal_settings)
    assert "claude" not in config.available_providers


def test_load_config_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config(Path("/nonexistent/settings.yaml"))


def test_shipped_settings_cover_both_languages(app_config):
    assert set(app_config.prompts) == {"en", "pt"}
    for prompts in app_config.prompts.values():
        assert prompts.fallbacks["retry"]
        assert prompts.fallbacks["unable_to_assess"]
        assert "{record}" in prompts.verdict.user


def test_shipped_settings_lmstudio_uses_base_url(app_config):
    assert app_config.models["lmstudio"].sdk == "openai"
    assert app_config.models["lmstudio"].base_url == "http://localhost:1234/v1"


def test_shipped_settings_tuning(app_config):
    assert app_config.generation["context_analysis"].temperature == 0.3
    assert app_config.generation["sanitize"].temperature == 0.3
    assert app_config.generation["verdict"].temperature == 0.4
    assert app_config.generation["summary"].temperature == 0.7
