"""Shared fixtures: isolated config, log and cache directories per test."""

from __future__ import annotations

import sys

import pytest

from harness_core.config import get_config, reset_config


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Fresh configuration rooted in the test's tmp_path."""
    monkeypatch.setenv("HARNESS_NODE_LOG_DIR", str(tmp_path / "node_logs"))
    monkeypatch.setenv("HARNESS_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.delenv("HARNESS_IPC_SOCKET", raising=False)
    reset_config()
    yield get_config()
    reset_config()


@pytest.fixture
def python_exe() -> str:
    return sys.executable
