"""Pytest configuration and fixtures for maestro tests.

CRITICAL: Tests must never deploy to real hosts or read a real fleet config.
"""

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def isolate_environment(tmp_path, monkeypatch):
    """Run every test from an empty directory with no MAESTRO_CONFIG override.

    The CLI falls back to ./config.toml; a developer's working configuration
    must never be picked up by a test.
    """
    monkeypatch.delenv("MAESTRO_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    yield


@pytest.fixture
def mock_config_path(tmp_path, monkeypatch):
    """Point ConfigManager's default path at an isolated file.

    Example:
        def test_something(mock_config_path):
            mock_config_path.write_text(SAMPLE_CONFIG)
            ConfigManager.load_config()  # reads the isolated file
    """
    config_file = tmp_path / "isolated" / "config.toml"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    from maestro.config_manager import ConfigManager

    def mock_get_path(custom_path=None):
        if custom_path:
            return Path(custom_path)
        return config_file

    monkeypatch.setattr(ConfigManager, "get_config_path", mock_get_path)

    return config_file
