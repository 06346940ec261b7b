"""Pytest configuration and fixtures for Tokligence tests."""

import json
import sys
from pathlib import Path

import httpx
import pytest

from tokligence.config import ConfigView
from tokligence.consent import ConsentGate
from tokligence.schemas import ConsentChoice

GATEWAY_URL = "http://gateway.test"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")


def write_config(path: Path, **values) -> Path:
    """Write a config file merged with test defaults."""
    data = {
        "url": GATEWAY_URL,
        "system_prompt": "You are a test assistant.",
        "model": "test-model",
        "request_timeout_ms": 5000,
        "start_grace_seconds": 0.2,
        "auto_download_binary": False,
    }
    data.update(values)
    path.write_text(json.dumps(data))
    return path


def sse(payload) -> bytes:
    """Frame one SSE event; dicts are JSON encoded."""
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode("utf-8")


def delta(text: str) -> dict:
    """Streaming chunk payload carrying one content delta."""
    return {"choices": [{"delta": {"content": text}}]}


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Path to a test config file with defaults written."""
    return write_config(tmp_path / "config.json")


@pytest.fixture
def config_view(config_path: Path) -> ConfigView:
    """ConfigView reading the test config file."""
    return ConfigView(config_path)


@pytest.fixture
def allow_all(tmp_path: Path) -> ConsentGate:
    """Consent gate that grants every action once."""
    return ConsentGate(lambda action, question: ConsentChoice.ALLOW_ONCE, tmp_path / "consent.json")


@pytest.fixture
def mock_transport():
    """Factory for httpx.MockTransport from a request handler."""

    def _make(handler) -> httpx.MockTransport:
        return httpx.MockTransport(handler)

    return _make
