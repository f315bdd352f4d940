"""Tests for rewind.config module."""

from pathlib import Path

import pytest
import yaml

from rewind.config import (
    DEFAULT_IGNORE_PATTERNS,
    RewindConfig,
    ensure_directories,
    get_config_path,
    get_projects_dir,
    get_rewind_dir,
)


class TestPaths:
    """Storage root resolution."""

    def test_rewind_home_override(self, tmp_path: Path, monkeypatch):
        """REWIND_HOME moves the whole storage root."""
        monkeypatch.setenv("REWIND_HOME", str(tmp_path / "store"))

        assert get_rewind_dir() == tmp_path / "store"
        assert get_projects_dir() == tmp_path / "store" / "projects"
        assert get_config_path() == tmp_path / "store" / "config.yaml"

    def test_default_is_home(self, monkeypatch):
        """Without REWIND_HOME storage lives in ~/.rewind."""
        monkeypatch.delenv("REWIND_HOME", raising=False)

        assert get_rewind_dir() == Path.home() / ".rewind"

    def test_ensure_directories(self, tmp_path: Path):
        """ensure_directories creates the projects directory."""
        root = ensure_directories(tmp_path / "store")

        assert root == tmp_path / "store"
        assert (root / "projects").is_dir()


class TestRewindConfig:
    """Loading and saving config.yaml."""

    def test_defaults(self):
        """Default values match the documented ones."""
        cfg = RewindConfig()

        assert cfg.ignore_patterns == DEFAULT_IGNORE_PATTERNS
        assert cfg.custom_ignore_patterns == []
        assert cfg.list_limit == 20
        assert cfg.cleanup_days == 30
        assert cfg.hook_enabled is False
        assert cfg.auto_checkpoint is True

    def test_defaults_are_not_shared(self):
        """Each config gets its own pattern list."""
        a = RewindConfig()
        a.ignore_patterns.append("extra")

        assert "extra" not in RewindConfig().ignore_patterns

    def test_load_missing_file_returns_defaults(self, tmp_path: Path):
        """No config.yaml means defaults."""
        assert RewindConfig.load(tmp_path) == RewindConfig()

    def test_save_and_load(self, tmp_path: Path):
        """A saved config loads back equal."""
        cfg = RewindConfig(list_limit=5, hook_enabled=True, custom_ignore_patterns=["*.tmp"])

        path = cfg.save(tmp_path)

        assert path == tmp_path / "config.yaml"
        assert RewindConfig.load(tmp_path) == cfg

    def test_unknown_keys_dropped(self, tmp_path: Path):
        """Keys the config does not know are ignored."""
        (tmp_path / "config.yaml").write_text(yaml.safe_dump({"list_limit": 7, "api_key": "secret"}))

        cfg = RewindConfig.load(tmp_path)

        assert cfg.list_limit == 7
        assert not hasattr(cfg, "api_key")

    def test_wrong_types_fall_back_to_defaults(self, tmp_path: Path):
        """Values of the wrong type keep their defaults."""
        (tmp_path / "config.yaml").write_text(
            yaml.safe_dump({"list_limit": "many", "cleanup_days": True, "ignore_patterns": [1, 2]})
        )

        cfg = RewindConfig.load(tmp_path)

        assert cfg.list_limit == 20
        assert cfg.cleanup_days == 30
        assert cfg.ignore_patterns == DEFAULT_IGNORE_PATTERNS

    def test_malformed_yaml_returns_defaults(self, tmp_path: Path):
        """Unparseable YAML means defaults."""
        (tmp_path / "config.yaml").write_text("list_limit: [unclosed")

        assert RewindConfig.load(tmp_path) == RewindConfig()

    def test_non_mapping_returns_defaults(self, tmp_path: Path):
        """A YAML list is not a config."""
        (tmp_path / "config.yaml").write_text("- just\n- a list\n")

        assert RewindConfig.load(tmp_path) == RewindConfig()

    def test_all_ignore_patterns_order(self):
        """Custom patterns come after the defaults."""
        cfg = RewindConfig(ignore_patterns=["a"], custom_ignore_patterns=["b", "!c"])

        assert cfg.all_ignore_patterns() == ["a", "b", "!c"]


class TestIgnorePatternEditing:
    def test_add_pattern(self):
        """Adding a pattern twice keeps one copy."""
        cfg = RewindConfig()

        assert cfg.add_ignore_pattern("*.tmp") is True
        assert cfg.add_ignore_pattern("*.tmp") is False
        assert cfg.custom_ignore_patterns == ["*.tmp"]

    def test_remove_pattern(self):
        """Removing a missing pattern reports False."""
        cfg = RewindConfig(custom_ignore_patterns=["*.tmp"])

        assert cfg.remove_ignore_pattern("*.tmp") is True
        assert cfg.remove_ignore_pattern("*.tmp") is False
        assert cfg.custom_ignore_patterns == []


class TestSetValue:
    """Coercion of CLI strings."""

    def test_int(self):
        """Integer keys are parsed from strings."""
        cfg = RewindConfig()

        assert cfg.set_value("list_limit", "50") == 50
        assert cfg.list_limit == 50

    @pytest.mark.parametrize("raw,expected", [("true", True), ("YES", True), ("off", False), ("0", False)])
    def test_bool(self, raw, expected):
        """Boolean keys accept the usual spellings."""
        cfg = RewindConfig()

        cfg.set_value("auto_checkpoint", raw)

        assert cfg.auto_checkpoint is expected

    def test_invalid_bool(self):
        """Unrecognized booleans raise ValueError."""
        with pytest.raises(ValueError):
            RewindConfig().set_value("hook_enabled", "maybe")

    def test_invalid_int(self):
        """Non-numeric integers raise ValueError."""
        with pytest.raises(ValueError):
            RewindConfig().set_value("cleanup_days", "soon")

    def test_non_positive_int(self):
        """Counts must be positive."""
        with pytest.raises(ValueError):
            RewindConfig().set_value("list_limit", "0")

    def test_unknown_key(self):
        """Unknown keys raise KeyError."""
        with pytest.raises(KeyError):
            RewindConfig().set_value("nope", "1")

    def test_list_fields_rejected(self):
        """Pattern lists are edited through the ignore commands only."""
        with pytest.raises(KeyError):
            RewindConfig().set_value("ignore_patterns", "*.log")
