"""
SilentLine - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and environment-specific values are loaded from environment variables.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: str = "development"
    app_debug: bool = True
    app_log_level: str = "INFO"
    log_json: bool = False  # JSON log lines (production) vs human-readable

    # --- Server ---
    backend_host: str = "0.0.0.0"
    backend_port: int = 8000

    # --- Triage Analysis ---
    # "dummy" = loudness/vitals heuristic (default, no API key needed)
    # "gemini" = Gemini generateContent with inline audio + frame
    analysis_backend: str = "dummy"
    analysis_interval_seconds: float = 10.0
    analysis_timeout_seconds: float = 30.0

    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_temperature: float = 0.2

    # --- Ingest ---
    # Items beyond capacity are dropped, never queued
    ingest_queue_capacity: int = 500
    # Raw caller audio format (PCM 16-bit, 16kHz, mono = 32000 bytes/sec)
    audio_sample_rate: int = 16000
    audio_channels: int = 1
    audio_sample_width_bytes: int = 2

    # --- Vitals ---
    pending_vitals_ttl_seconds: float = 300.0  # 0 = keep until registration

    # --- Peer Media Relay (TURN) ---
    turn_secret: Optional[str] = None
    turn_ttl_seconds: int = 86400
    turn_uris: str = "turn:localhost:3478?transport=udp,turn:localhost:3478?transport=tcp"

    # --- Security ---
    allowed_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def turn_uris_list(self) -> List[str]:
        return [uri.strip() for uri in self.turn_uris.split(",") if uri.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.

    Use dependency injection in routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()

