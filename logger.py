"""Logging setup for chat-api: one rotating file (or the console) per process."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

import colorlog

from config import AppConfig

LOGGER_NAME = "chat_api"

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
COLOR_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s"

# Third-party loggers that would otherwise log every upstream request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(config: AppConfig) -> logging.Logger:
    """
    Configure the service logger from `config`.

    LOG_LEVEL=DISABLE turns logging off entirely. If LOG_PATH cannot be
    opened the logger falls back to stderr and says so once.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    if config.log_level == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger

    logging.disable(logging.NOTSET)
    logger.setLevel(getattr(logging, config.log_level, logging.INFO))
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    handler: logging.Handler
    try:
        handler = RotatingFileHandler(
            config.log_path,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        fallback_err = None
    except OSError as e:
        handler = logging.StreamHandler()
        fallback_err = e

    handler.setFormatter(_formatter(config.log_color))
    logger.addHandler(handler)

    if fallback_err is not None:
        logger.warning(
            "Cannot write log file %r (%s); logging to stderr instead.",
            config.log_path,
            fallback_err,
        )
    return logger


def _formatter(color: bool) -> logging.Formatter:
    if not color:
        return logging.Formatter(PLAIN_FORMAT)
    return colorlog.ColoredFormatter(
        COLOR_FORMAT,
        reset=True,
        log_colors={
            "DEBUG": "cyan",
            "INFO": "green",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "red,bg_white",
        },
    )


def mask_secret(s: str, keep_start: int = 4, keep_end: int = 2) -> str:
    """Show only the edges of a credential, e.g. for startup logs."""
    s = (s or "").strip()
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
