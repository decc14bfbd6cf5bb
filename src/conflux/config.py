"""Configuration loading for conflux services and the CLI."""
import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .policies import DEFAULT_MAX_AGE_SECONDS, PolicyRegistry

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_BASE_PATH = Path.home() / ".conflux"
CONFIG_FILENAME = "config.yaml"
STORE_FILENAME = "conflicts.sqlite"
AUDIT_FILENAME = "audit.sqlite"

STORE_BACKENDS = ("memory", "sqlite")

DEFAULT_CONFIG: Dict[str, Any] = {
    "store": {"backend": "sqlite", "path": STORE_FILENAME},
    "audit": {"enabled": True, "path": AUDIT_FILENAME},
    "policies": {"default": "prompt", "tables": {}},
    "expiry": {"max_age_seconds": DEFAULT_MAX_AGE_SECONDS},
    "notifications": {"webhook_url": None},
    "logging": {"level": "WARNING"},
}


def get_base_path(base_path: Optional[Path] = None) -> Path:
    """Get the base path for conflux data.

    Priority: explicit argument > CONFLUX_BASE_PATH env var > default path.
    """
    if base_path:
        return Path(base_path)
    env_path = os.getenv("CONFLUX_BASE_PATH")
    if env_path:
        return Path(env_path)
    return DEFAULT_BASE_PATH


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class ConfluxConfig:
    """Resolved configuration rooted at a base directory."""
    base_path: Path
    data: Dict[str, Any] = field(default_factory=lambda: _merge(DEFAULT_CONFIG, {}))

    @property
    def config_path(self) -> Path:
        return self.base_path / CONFIG_FILENAME

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.data.get(name)
        if section is None:
            return {}
        if not isinstance(section, dict):
            raise ValueError(f"Config section '{name}' must be a mapping, got {section!r}")
        return section

    @property
    def store_backend(self) -> str:
        backend = str(self._section("store").get("backend", "sqlite")).lower()
        if backend not in STORE_BACKENDS:
            raise ValueError(
                f"Invalid store backend '{backend}'. Must be one of: {', '.join(STORE_BACKENDS)}"
            )
        return backend

    def _resolve_path(self, value: Any) -> Path:
        if not isinstance(value, str):
            raise ValueError(f"Expected a file path, got {value!r}")
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.base_path / path

    @property
    def store_path(self) -> Path:
        return self._resolve_path(self._section("store").get("path") or STORE_FILENAME)

    @property
    def audit_enabled(self) -> bool:
        return bool(self._section("audit").get("enabled", True))

    @property
    def audit_path(self) -> Path:
        return self._resolve_path(self._section("audit").get("path") or AUDIT_FILENAME)

    @property
    def max_age_seconds(self) -> Optional[float]:
        value = self._section("expiry").get("max_age_seconds")
        return None if value is None else float(value)

    @property
    def policies(self) -> PolicyRegistry:
        return PolicyRegistry.from_dict(self._section("policies"), max_age_seconds=self.max_age_seconds)

    @property
    def webhook_url(self) -> Optional[str]:
        url = self._section("notifications").get("webhook_url") or None
        if url is not None and not (isinstance(url, str) and url.startswith(("http://", "https://"))):
            raise ValueError(f"Webhook URL must be an http(s) URL, got {url!r}")
        return url

    @property
    def log_level(self) -> int:
        name = self._section("logging").get("level", "WARNING")
        if isinstance(name, int) and not isinstance(name, bool):
            return name
        level = logging.getLevelName(str(name).upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level {name!r}")
        return level

    def validate(self) -> None:
        """
        Check every setting the service and CLI read.

        Raises:
            ValueError: If a section or value is malformed
        """
        for section in DEFAULT_CONFIG:
            self._section(section)
        try:
            self.store_backend
            self.store_path
            self.audit_enabled
            self.audit_path
            self.max_age_seconds
            self.policies
            self.webhook_url
            self.log_level
        except TypeError as e:
            raise ValueError(str(e)) from e

    def get(self, key: str) -> Any:
        """Look up a dotted key (e.g. 'policies.default').

        Raises:
            KeyError: If any part of the key is missing
        """
        current: Any = self.data
        for part in key.split('.'):
            if not isinstance(current, dict) or part not in current:
                raise KeyError(key)
            current = current[part]
        return current

    def set(self, key: str, value: Any) -> None:
        """Set a dotted key, creating intermediate sections."""
        keys = key.split('.')
        current = self.data
        for part in keys[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[keys[-1]] = value

    def save(self) -> Path:
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(yaml.safe_dump(self.data, default_flow_style=False, sort_keys=True))
        return self.config_path

    @classmethod
    def load(cls, base_path: Optional[Path] = None) -> "ConfluxConfig":
        """
        Load config.yaml under the base path, filling in defaults.

        A missing file yields the defaults.
        """
        base = get_base_path(base_path)
        config_path = base / CONFIG_FILENAME
        overrides: Dict[str, Any] = {}
        if config_path.exists():
            overrides = yaml.safe_load(config_path.read_text()) or {}
            if not isinstance(overrides, dict):
                raise ValueError(f"Invalid config file {config_path}: expected a mapping")
            logger.debug(f"Loaded config from {config_path}")
        return cls(base_path=base, data=_merge(DEFAULT_CONFIG, overrides))


def parse_value(value: str) -> Any:
    """Parse a CLI-supplied config value as YAML (so 'true', '30', 'null' work)."""
    return yaml.safe_load(value)


__all__ = [
    "ConfluxConfig",
    "DEFAULT_BASE_PATH",
    "DEFAULT_CONFIG",
    "get_base_path",
    "parse_value",
]
