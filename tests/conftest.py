"""Pytest configuration and shared fixtures."""

import os

import pytest


@pytest.fixture(autouse=True)
def isolate_toolchat_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep TOOLCHAT_* and API key variables from the host out of tests."""
    for var in list(os.environ):
        if var.startswith("TOOLCHAT_") or var in ("XAI_API_KEY", "OPENAI_API_KEY"):
            monkeypatch.delenv(var, raising=False)
