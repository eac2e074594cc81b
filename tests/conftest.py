"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import shutil
from dataclasses import replace
from pathlib import Path

import pytest

from prosodyfix.config import AppConfig, default_app_config


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip tests that need a real Prosody when it is not installed."""
    if shutil.which("prosody") and shutil.which("prosodyctl"):
        return
    skip_marker = pytest.mark.skip(reason="prosody/prosodyctl not found on PATH.")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def settings(tmp_path: Path) -> AppConfig:
    """Return defaults bound to IPv4 loopback with logs under *tmp_path*."""
    return replace(
        default_app_config(),
        bind_host="127.0.0.1",
        logs_dir=tmp_path / "logs",
        start_timeout=5.0,
        stop_timeout=2.0,
    )
