"""Configuration management for the chat-api service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


def _csv_list(name: str) -> List[str]:
    """Parse comma-separated environment variable into an ordered list."""
    v = os.getenv(name, "")
    return [x.strip() for x in v.split(",") if x.strip()]


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Local backend (Ollama)
    ollama_host: str
    default_model: str
    ollama_timeout_s: float
    ollama_num_ctx: int
    ollama_num_predict: int

    # Cloud backend (Gemini)
    gemini_api_key: str
    gemini_model: str
    gemini_api_base: str
    gemini_timeout_s: float
    cloud_model_prefix: str

    # Rate limiting (per client identity)
    rate_limit_window_s: float
    rate_limit_max: int
    rate_limit_sweep_threshold: int

    # Streaming
    heartbeat_interval_s: float
    disconnect_poll_s: float
    connect_timeout_s: float

    # Server settings
    host: str
    port: int
    allowed_origins: List[str]
    log_level: str
    max_request_bytes: int
    log_path: str
    log_max_bytes: int
    log_backup_count: int
    log_color: bool
    user_agent: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        ollama_timeout_s = _env_float("OLLAMA_TIMEOUT_MS", 120_000) / 1000.0
        return cls(
            ollama_host=_env_str("OLLAMA_HOST", "http://127.0.0.1:11434").rstrip("/"),
            default_model=_env_str("DEFAULT_MODEL", "errl-ai"),
            ollama_timeout_s=ollama_timeout_s,
            # Keep local models snappy on low-RAM servers
            ollama_num_ctx=_env_int("OLLAMA_NUM_CTX", 1024),
            ollama_num_predict=_env_int("OLLAMA_NUM_PREDICT", 128),
            gemini_api_key=_env_str("GEMINI_API_KEY", "").strip(),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.0-flash"),
            gemini_api_base=_env_str(
                "GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta"
            ).rstrip("/"),
            gemini_timeout_s=_env_float("GEMINI_TIMEOUT_MS", ollama_timeout_s * 1000.0) / 1000.0,
            cloud_model_prefix=_env_str("CLOUD_MODEL_PREFIX", "gemini:"),
            rate_limit_window_s=_env_float("RATE_LIMIT_WINDOW_MS", 60_000) / 1000.0,
            rate_limit_max=_env_int("RATE_LIMIT_MAX", 30),
            rate_limit_sweep_threshold=_env_int("RATE_LIMIT_SWEEP_THRESHOLD", 5000),
            heartbeat_interval_s=_env_float("HEARTBEAT_INTERVAL_S", 15.0),
            disconnect_poll_s=_env_float("DISCONNECT_POLL_S", 0.5),
            connect_timeout_s=_env_float("CONNECT_TIMEOUT_S", 10.0),
            host=_env_str("HOST", "127.0.0.1"),
            port=_env_int("PORT", 3033),
            allowed_origins=_csv_list("ALLOWED_ORIGINS"),
            log_level=_env_str("LOG_LEVEL", "INFO").upper().strip(),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 1_048_576),  # 1 MB
            log_path=_env_str("LOG_PATH", "/var/log/chat-api/chat-api.log"),
            log_max_bytes=_env_int("LOG_MAX_BYTES", 1_048_576),
            log_backup_count=_env_int("LOG_BACKUP_COUNT", 3),
            log_color=_env_bool("LOG_COLOR", True),
            user_agent=_env_str("USER_AGENT", "chat-api/1.0.0"),
        )

    @property
    def gemini_configured(self) -> bool:
        return bool(self.gemini_api_key)

    @property
    def rate_limit_enabled(self) -> bool:
        return self.rate_limit_max > 0 and self.rate_limit_window_s > 0

    def validate(self) -> None:
        """Validate configuration."""
        if not self.ollama_host:
            raise ValueError("OLLAMA_HOST must be non-empty")
        if not self.default_model:
            raise ValueError("DEFAULT_MODEL must be non-empty")
        if self.ollama_timeout_s <= 0:
            raise ValueError("OLLAMA_TIMEOUT_MS must be > 0")
        if self.gemini_timeout_s <= 0:
            raise ValueError("GEMINI_TIMEOUT_MS must be > 0")
        if not self.cloud_model_prefix:
            raise ValueError("CLOUD_MODEL_PREFIX must be non-empty")
        if self.rate_limit_sweep_threshold <= 0:
            raise ValueError("RATE_LIMIT_SWEEP_THRESHOLD must be > 0")
        if self.heartbeat_interval_s <= 0:
            raise ValueError("HEARTBEAT_INTERVAL_S must be > 0")
        if self.disconnect_poll_s <= 0:
            raise ValueError("DISCONNECT_POLL_S must be > 0")
        if self.connect_timeout_s <= 0:
            raise ValueError("CONNECT_TIMEOUT_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if self.log_max_bytes < 0 or self.log_backup_count < 0:
            raise ValueError("LOG_MAX_BYTES and LOG_BACKUP_COUNT must be >= 0")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
