"""Centralized configuration loaded from environment."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    base_url: str = Field(default="http://localhost:1234", alias="LMSTUDIO_BASE_URL")
    api_key: str = Field(default="", alias="LMSTUDIO_API_KEY")
    model_id: str = Field(default="", alias="MODEL_ID")
    vision_model_id: str = Field(default="", alias="VISION_MODEL_ID")
    temperature: float = Field(default=0.0, alias="TEMPERATURE")
    max_output_tokens: int = Field(default=1024, alias="MAX_OUTPUT_TOKENS")
    request_timeout_ms: int = Field(default=120_000, alias="REQUEST_TIMEOUT_MS")
    supports_json_mode: bool = Field(default=True, alias="SUPPORTS_JSON_MODE")
    low_confidence_threshold: float = Field(default=0.3, alias="LOW_CONFIDENCE_THRESHOLD")
    questions_path: Path = Field(default=Path("data/sample_questions.json"), alias="QUESTIONS_PATH")
    topology_path: Path = Field(default=Path("data/sample_topology.json"), alias="TOPOLOGY_PATH")
    runs_dir: Path = Field(default=Path("runs"), alias="RUNS_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    sanitize_logs: bool = Field(default=True, alias="SANITIZE_LOGS")


settings = Settings()
