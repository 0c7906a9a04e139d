"""
Unit Tests for the Configuration Module

Usage:
    pytest tests/test_config.py -v
"""

import logging
import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import keycore.config as config_module
from keycore.config import get_config, get_project_root, get_section, load_config


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    monkeypatch.setattr(config_module, "_config_instance", None)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "matching:\n"
        "  similarity_threshold: 0.9\n"
        "smoothing:\n"
        "  window_size: 5\n"
        "storage:\n"
    )
    return path


class TestLoading:
    """Tests for reading config files."""

    def test_project_config(self):
        root = get_project_root()
        assert (root / "config.yaml").exists()

        config = get_config()
        assert config["matching"]["similarity_threshold"] == 0.85
        assert config["smoothing"]["window_size"] == 3
        assert config["enrollment"]["min_frames"] == 8
        assert config["enrollment"]["max_frames"] == 12

    def test_project_sections(self):
        config = get_config()
        assert set(config) == {"feature", "matching", "smoothing", "enrollment", "storage", "logging"}

    def test_explicit_path(self, config_file):
        config = get_config(config_path=str(config_file))
        assert config["matching"]["similarity_threshold"] == 0.9

    def test_singleton(self, config_file):
        first = get_config(config_path=str(config_file))
        assert get_config() is first

    def test_reload(self, config_file):
        get_config(config_path=str(config_file))
        config = get_config(reload=True)
        assert config["matching"]["similarity_threshold"] == 0.85

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))


class TestSections:
    """Tests for section access."""

    def test_section(self, config_file):
        get_config(config_path=str(config_file))
        assert get_section("smoothing") == {"window_size": 5}

    def test_empty_section(self, config_file):
        get_config(config_path=str(config_file))
        assert get_section("storage") == {}

    def test_unknown_section(self, config_file):
        get_config(config_path=str(config_file))
        with pytest.raises(KeyError, match="Available sections"):
            get_section("camera")


class TestLogging:
    def test_setup_logging_explicit_level(self, monkeypatch):
        calls = {}
        monkeypatch.setattr(logging, "basicConfig", lambda **kw: calls.update(kw))
        config_module.setup_logging("debug")
        assert calls["level"] == logging.DEBUG
        assert calls["format"] == config_module.LOG_FORMAT

    def test_setup_logging_from_config(self, monkeypatch):
        calls = {}
        monkeypatch.setattr(logging, "basicConfig", lambda **kw: calls.update(kw))
        config_module.setup_logging()
        assert calls["level"] == logging.INFO


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
