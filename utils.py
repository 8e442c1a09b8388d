"""Utility functions for the chat-api service."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import AppConfig
from logger import mask_secret

log = logging.getLogger("chat_api")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config: AppConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== chat-api startup config ===")
    log.info("OLLAMA_HOST=%s", config.ollama_host)
    log.info("DEFAULT_MODEL=%s", config.default_model)
    log.info("OLLAMA_TIMEOUT_S=%s", config.ollama_timeout_s)
    log.info("OLLAMA_NUM_CTX=%s", config.ollama_num_ctx)
    log.info("OLLAMA_NUM_PREDICT=%s", config.ollama_num_predict)
    log.info(
        "GEMINI_API_KEY_set=%s value=%s len=%s",
        config.gemini_configured,
        mask_secret(config.gemini_api_key),
        len(config.gemini_api_key or ""),
    )
    log.info("GEMINI_MODEL=%s", config.gemini_model)
    log.info("GEMINI_API_BASE=%s", config.gemini_api_base)
    log.info("GEMINI_TIMEOUT_S=%s", config.gemini_timeout_s)
    log.info("CLOUD_MODEL_PREFIX=%s", config.cloud_model_prefix)
    log.info("RATE_LIMIT_WINDOW_S=%s", config.rate_limit_window_s)
    log.info("RATE_LIMIT_MAX=%s", config.rate_limit_max)
    if not config.rate_limit_enabled:
        log.info("Rate limiting disabled (RATE_LIMIT_MAX or RATE_LIMIT_WINDOW_MS <= 0).")
    log.info("HEARTBEAT_INTERVAL_S=%s", config.heartbeat_interval_s)
    log.info("ALLOWED_ORIGINS=%s", config.allowed_origins)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s max_bytes=%s backups=%s", config.log_path, config.log_max_bytes, config.log_backup_count)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("===============================")
