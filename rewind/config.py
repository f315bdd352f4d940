"""Configuration management for Rewind.

Storage Structure
-----------------
~/.rewind/                    # Storage root (REWIND_HOME overrides)
├── config.yaml               # User preferences (this module)
└── projects/
    └── <project-id>/         # One namespace per project path
        ├── project.yaml      # Path the namespace belongs to
        ├── objects/          # Content store (blobs and trees)
        ├── commits/          # Commit graph
        └── refs/             # HEAD, ORIG_HEAD

The snapshot engine never reads this file. The CLI and hook layers load
RewindConfig and pass the resulting ignore patterns into ProjectContext.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from rewind.atomic import atomic_write_yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
PROJECTS_DIRNAME = "projects"

DEFAULT_IGNORE_PATTERNS = [
    "node_modules",
    ".git",
    ".rewind",
    "dist",
    "build",
    ".env*",
    "*.log",
    ".DS_Store",
]


def get_rewind_dir() -> Path:
    """Storage root: $REWIND_HOME, or ~/.rewind."""
    if env_home := os.environ.get("REWIND_HOME"):
        return Path(env_home).expanduser()
    return Path.home() / ".rewind"


def get_projects_dir(rewind_dir: Path | None = None) -> Path:
    return (rewind_dir or get_rewind_dir()) / PROJECTS_DIRNAME


def get_config_path(rewind_dir: Path | None = None) -> Path:
    return (rewind_dir or get_rewind_dir()) / CONFIG_FILENAME


def ensure_directories(rewind_dir: Path | None = None) -> Path:
    """Ensure the storage root and projects directory exist."""
    root = rewind_dir or get_rewind_dir()
    get_projects_dir(root).mkdir(parents=True, exist_ok=True)
    return root


@dataclass
class RewindConfig:
    """User-configurable preferences.

    Only these fields are ever read from or written to config.yaml; unknown
    keys in the file are dropped on load.
    """

    ignore_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    custom_ignore_patterns: list[str] = field(default_factory=list)
    list_limit: int = 20
    cleanup_days: int = 30
    hook_enabled: bool = False
    auto_checkpoint: bool = True

    @classmethod
    def load(cls, rewind_dir: Path | None = None) -> "RewindConfig":
        """Load config from the storage root, or defaults if absent.

        A malformed file logs a warning and falls back to defaults.
        """
        config_path = get_config_path(rewind_dir)
        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to read {config_path}, using defaults: {e}")
            return cls()

        if not isinstance(data, dict):
            logger.warning(f"Ignoring {config_path}: expected a mapping")
            return cls()

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "RewindConfig":
        """Apply known fields whose type matches the default's type."""
        defaults = cls()
        values: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            expected = type(getattr(defaults, f.name))
            if expected is list:
                if isinstance(value, list) and all(isinstance(v, str) for v in value):
                    values[f.name] = list(value)
                    continue
            # bool is a subclass of int; keep them apart
            elif isinstance(value, expected) and not (expected is int and isinstance(value, bool)):
                values[f.name] = value
                continue
            logger.warning(f"Ignoring config field {f.name!r}: unexpected value {value!r}")
        return cls(**values)

    def save(self, rewind_dir: Path | None = None) -> Path:
        """Save config to the storage root."""
        config_path = get_config_path(rewind_dir)
        result = atomic_write_yaml(config_path, self.to_dict())
        if result.is_err():
            raise result.unwrap_err()
        return config_path

    def to_dict(self) -> dict[str, Any]:
        return {
            "ignore_patterns": list(self.ignore_patterns),
            "custom_ignore_patterns": list(self.custom_ignore_patterns),
            "list_limit": self.list_limit,
            "cleanup_days": self.cleanup_days,
            "hook_enabled": self.hook_enabled,
            "auto_checkpoint": self.auto_checkpoint,
        }

    def all_ignore_patterns(self) -> list[str]:
        """Default patterns followed by custom ones."""
        return [*self.ignore_patterns, *self.custom_ignore_patterns]

    def add_ignore_pattern(self, pattern: str) -> bool:
        """Add a custom pattern. Returns False if it was already present."""
        if pattern in self.custom_ignore_patterns:
            return False
        self.custom_ignore_patterns.append(pattern)
        return True

    def remove_ignore_pattern(self, pattern: str) -> bool:
        """Remove a custom pattern. Returns False if it was not present."""
        if pattern not in self.custom_ignore_patterns:
            return False
        self.custom_ignore_patterns.remove(pattern)
        return True

    def set_value(self, key: str, raw: str) -> Any:
        """Set a scalar field from a CLI string.

        Raises:
            KeyError: unknown key, or a list field (use the ignore commands)
            ValueError: value cannot be coerced to the field's type
        """
        scalar_fields = {"list_limit", "cleanup_days", "hook_enabled", "auto_checkpoint"}
        if key not in scalar_fields:
            raise KeyError(key)

        current = getattr(self, key)
        if isinstance(current, bool):
            lowered = raw.strip().lower()
            if lowered in ("true", "yes", "on", "1"):
                value: Any = True
            elif lowered in ("false", "no", "off", "0"):
                value = False
            else:
                raise ValueError(f"{key} expects true/false, got {raw!r}")
        else:
            value = int(raw)
            if value < 1:
                raise ValueError(f"{key} must be at least 1")

        setattr(self, key, value)
        return value

