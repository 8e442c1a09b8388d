"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup
"""

import os
import sys
from dataclasses import replace
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/chat_api_test.log")
os.environ.setdefault("OLLAMA_HOST", "http://ollama.test")


@pytest.fixture
def test_config():
    """Configuration with small timings and both backends available."""
    from config import AppConfig

    cfg = AppConfig.from_env()
    return replace(
        cfg,
        ollama_host="http://ollama.test",
        default_model="errl-ai",
        ollama_timeout_s=5.0,
        ollama_num_ctx=1024,
        ollama_num_predict=128,
        gemini_api_key="test-gemini-key",
        gemini_model="gemini-2.0-flash",
        gemini_api_base="https://gemini.test/v1beta",
        gemini_timeout_s=5.0,
        cloud_model_prefix="gemini:",
        rate_limit_window_s=60.0,
        rate_limit_max=30,
        heartbeat_interval_s=15.0,
        disconnect_poll_s=0.05,
        allowed_origins=[],
    )


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root
