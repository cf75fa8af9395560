"""Application configuration."""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI
    openai_api_key: str
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-10-01"
    openai_extraction_model: str = "gpt-4o-mini"

    # Database
    database_url: str

    # Clinic
    clinic_name: str = "MUSC"
    intake_protocol_file: Optional[str] = None

    # Voice session
    voice_intro: str = "alloy"
    voice_question: str = "alloy"
    temperature: float = 0.8
    vad_threshold: float = 0.5
    vad_prefix_padding_ms: int = 300
    vad_silence_duration_ms: int = 500

    # Session timing (seconds)
    greeting_fallback_seconds: float = 1.5
    closing_grace_seconds: float = 4.0
    model_connect_timeout_seconds: float = 10.0

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    base_url: Optional[str] = None
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


settings = Settings()
