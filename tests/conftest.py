"""Shared fixtures."""

from __future__ import annotations

import pytest


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment's .env file."""
    from kiosk_relay.config import Settings

    return Settings(
        _env_file=None,
        GEMINI_API_KEY="",
        vectorstore_dir=tmp_path / "vectorstore",
        min_turn_duration_sec=0.0,
        processing_timeout_sec=30.0,
        session_sweep_interval_sec=3600.0,
    )


@pytest.fixture
def store():
    from kiosk_relay.relay.sessions import SessionStore

    return SessionStore()
