"""Shared pytest configuration and fixtures for the extraction engine tests."""
from __future__ import annotations

import os

# Provide required env vars before any receipt_engine module is imported
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEFAULT_BACKEND", "mock")
os.environ.setdefault("CACHE_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("PREPROCESSING_ENABLED", "false")

import pytest  # noqa: E402

from receipt_engine.core.config import Settings  # noqa: E402


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        default_backend="mock",
        fallback_order="tesseract,ocr_space,google_vision",
        cache_sweep_interval_seconds=0,
        preprocessing_enabled=False,
        batch_max_concurrency=2,
        batch_cancel_poll_seconds=0.01,
    )
