"""Shared test fixtures for Spool."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from spool.config import Config, LoggingConfig, ModelConfig, StreamSettings


@pytest.fixture
def signal() -> asyncio.Event:
    """Provide an unset cancellation signal."""
    return asyncio.Event()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Provide a test configuration with one local model."""
    return Config(
        models={
            "local": ModelConfig(
                provider="openai_compatible",
                base_url="http://localhost:8000/v1",
                model="test-model",
                max_tokens=1000,
            ),
        },
        stream=StreamSettings(transport_retry_attempts=1),
        logging=LoggingConfig(level="DEBUG"),
    )
