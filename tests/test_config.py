"""Tests for configuration."""

from pathlib import Path

from kiosk_relay.config import DEFAULT_EXCLUDED_SOURCES, DEFAULT_TOOLS, Settings, get_settings


def test_default_settings():
    s = Settings(_env_file=None)
    assert s.port == 3100
    assert s.ws_path == "/audio"
    assert s.min_turn_duration_sec == 0.20
    assert s.search_min_score == 0.5
    assert s.search_top_k == 15
    assert s.session_idle_timeout_sec == 86400
    assert s.enabled_tools == DEFAULT_TOOLS
    assert s.excluded_sources == DEFAULT_EXCLUDED_SOURCES
    assert isinstance(s.vectorstore_dir, Path)


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("KIOSK_PORT", "4000")
    monkeypatch.setenv("KIOSK_MIN_TURN_DURATION", "0.35")
    monkeypatch.setenv("KIOSK_ENABLED_TOOLS", '["search_knowledge", "list_products"]')
    s = Settings(_env_file=None)
    assert s.port == 4000
    assert s.min_turn_duration_sec == 0.35
    assert s.enabled_tools == ["search_knowledge", "list_products"]


def test_field_names_accepted():
    s = Settings(_env_file=None, search_min_score=0.7, processing_timeout_sec=3)
    assert s.search_min_score == 0.7
    assert s.processing_timeout_sec == 3


def test_backend_available():
    assert not Settings(_env_file=None, GEMINI_API_KEY="").backend_available
    assert Settings(_env_file=None, GEMINI_API_KEY="key").backend_available


def test_defaults_not_shared():
    a = Settings(_env_file=None)
    a.enabled_tools.append("Game_Control")
    assert "Game_Control" not in Settings(_env_file=None).enabled_tools


def test_get_settings_cached(monkeypatch):
    monkeypatch.delattr(get_settings, "_instance", raising=False)
    assert get_settings() is get_settings()
