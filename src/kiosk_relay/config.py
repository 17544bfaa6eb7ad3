"""Central configuration loaded from environment / .env file."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

_PROJECT_ROOT = Path(__file__).resolve().parents[2]

DEFAULT_TOOLS = [
    "search_knowledge",
    "list_products",
    "return_user_text",
    "product_card",
    "show_product",
]

# The contact sheet is stored as a knowledge source but is not a product.
DEFAULT_EXCLUDED_SOURCES = ["ช่องทางการติดต่อ Exzy Company Limited"]


class Settings(BaseSettings):
    """Application-wide settings, populated from env vars or .env file."""

    # Live generative backend
    gemini_api_key: str = Field(default="", alias="GEMINI_API_KEY")
    live_model: str = Field(
        default="gemini-2.5-flash-native-audio-preview-12-2025",
        alias="KIOSK_LIVE_MODEL",
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, alias="KIOSK_TEMPERATURE")
    system_prompt_path: Optional[Path] = Field(default=None, alias="KIOSK_SYSTEM_PROMPT_PATH")
    enabled_tools: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TOOLS), alias="KIOSK_ENABLED_TOOLS"
    )

    # Server
    host: str = Field(default="0.0.0.0", alias="KIOSK_HOST")
    port: int = Field(default=3100, alias="KIOSK_PORT")
    ws_path: str = Field(default="/audio", alias="KIOSK_WS_PATH")

    # Session store
    session_idle_timeout_sec: float = Field(
        default=60 * 60 * 24, alias="KIOSK_SESSION_IDLE_TIMEOUT",
        description="Sessions idle longer than this are swept",
    )
    session_sweep_interval_sec: float = Field(
        default=60.0, alias="KIOSK_SESSION_SWEEP_INTERVAL",
    )
    max_history_turns: int = Field(
        default=200, ge=2, alias="KIOSK_MAX_HISTORY_TURNS",
        description="Oldest turns beyond this are dropped from a session",
    )
    function_log_size: int = Field(default=500, ge=1, alias="KIOSK_FUNCTION_LOG_SIZE")

    # Turn taking
    min_turn_duration_sec: float = Field(
        default=0.20, ge=0.0, alias="KIOSK_MIN_TURN_DURATION",
        description="Push-to-talk turns shorter than this are treated as accidental taps",
    )
    processing_timeout_sec: float = Field(
        default=10.0, gt=0.0, alias="KIOSK_PROCESSING_TIMEOUT",
        description="Send the can't-answer fallback if the backend stays silent this long",
    )
    tool_timeout_sec: float = Field(default=8.0, gt=0.0, alias="KIOSK_TOOL_TIMEOUT")
    sample_rate: int = Field(default=24000, alias="KIOSK_SAMPLE_RATE")

    # Retrieval
    search_top_k: int = Field(default=15, ge=1, alias="KIOSK_SEARCH_TOP_K")
    search_min_score: float = Field(
        default=0.5, alias="KIOSK_SEARCH_MIN_SCORE",
        description="Passages scoring below this are not returned to the model",
    )
    excluded_sources: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_SOURCES),
        alias="KIOSK_EXCLUDED_SOURCES",
    )
    vectorstore_dir: Path = Field(
        default=_PROJECT_ROOT / "data" / "vectorstore", alias="KIOSK_VECTORSTORE_DIR"
    )
    collection_name: str = Field(default="exzy_products", alias="KIOSK_COLLECTION")
    embedding_model: str = Field(
        default="gemini-embedding-001", alias="KIOSK_EMBEDDING_MODEL"
    )
    local_embedding_model: str = Field(
        default="all-MiniLM-L6-v2", alias="KIOSK_LOCAL_EMBEDDING_MODEL"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="KIOSK_LOG_LEVEL")

    model_config = {
        "env_file": str(_PROJECT_ROOT / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @property
    def backend_available(self) -> bool:
        """True when the live backend has an API key configured."""
        return bool(self.gemini_api_key)


def get_settings() -> Settings:
    """Return a cached Settings instance."""
    if not hasattr(get_settings, "_instance"):
        get_settings._instance = Settings()  # type: ignore[attr-defined]
    return get_settings._instance  # type: ignore[attr-defined]
