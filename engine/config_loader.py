"""
Session Orchestrator — Configuration Loader

Settings come from three layers, each overriding the one before:

  1. orchestrator.yaml at the project root
  2. config/{env}.yaml for the active environment (SO_ENV, default "dev")
  3. SO_* environment variables

Usage:
    from engine.config_loader import load_config, get_config

    config = load_config(env="prod", project_root=".")
    db_path = config.resolve_path("store.db_path")
    max_attempts = config.get("orchestration.max_attempts", 10)
"""

from __future__ import annotations

import copy
import logging
import os
import yaml
from pathlib import Path
from typing import Any

logger = logging.getLogger("session_orchestrator.config")

DEFAULT_BASE_FILES = ["orchestrator.yaml"]

# Values that stay literal even though they look like relative paths
_NON_PATHS = {":memory:"}


class ConfigLoader:
    """Merged view over the base file, the environment overlay and SO_* variables."""

    def __init__(
        self,
        env: str = "dev",
        project_root: str = ".",
        base_files: list[str] | None = None,
    ):
        self.env = env
        self.project_root = Path(project_root)
        self.base_files = base_files or list(DEFAULT_BASE_FILES)
        self._data: dict[str, Any] | None = None
        self._sources: list[str] = []

    def load(self) -> dict[str, Any]:
        layers: list[tuple[str, dict[str, Any]]] = []
        for name in self.base_files:
            data = self._read(self.project_root / name)
            if data is not None:
                layers.append((f"base:{name}", data))

        overlay = f"config/{self.env}.yaml"
        data = self._read(self.project_root / overlay)
        if data is not None:
            layers.append((f"overlay:{overlay}", data))

        from_env = _load_env_overrides()
        if from_env:
            layers.append((f"env_vars({len(from_env)} keys)", from_env))

        merged: dict[str, Any] = {}
        for _, data in layers:
            merged = _deep_merge(merged, data)
        self._data = merged
        self._sources = [label for label, _ in layers]
        logger.info("Config loaded: env=%s sources=%s", self.env, self._sources)
        return merged

    @staticmethod
    def _read(path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        with open(path) as f:
            return yaml.safe_load(f) or {}

    @property
    def data(self) -> dict[str, Any]:
        if self._data is None:
            self.load()
        return self._data

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """Look up "a.b.c"; any missing segment yields the default."""
        node: Any = self.data
        for part in dotted_key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def get_all(self) -> dict[str, Any]:
        return copy.deepcopy(self.data)

    def resolve_path(self, dotted_key: str, default: str | None = None) -> Path | None:
        """A config value as a path, anchored at the project root when relative."""
        value = self.get(dotted_key, default)
        if value is None:
            return None
        if value in _NON_PATHS or Path(value).is_absolute():
            return Path(value)
        return self.project_root / value

    @property
    def sources(self) -> list[str]:
        return list(self._sources)

    def reload(self) -> dict[str, Any]:
        self._data = None
        return self.data


def _deep_merge(base: dict, overlay: dict) -> dict:
    """New dict with overlay applied; nested dicts merge, anything else is replaced."""
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# ═══════════════════════════════════════════════════════════════════
# Environment Variables
# ═══════════════════════════════════════════════════════════════════

_ENV_MAPPINGS: dict[str, str] = {
    "SO_DB_PATH": "store.db_path",
    "SO_BUSY_TIMEOUT_MS": "store.busy_timeout_ms",
    "SO_MAX_ATTEMPTS": "orchestration.max_attempts",
    "SO_CATALOG_PATH": "catalog.path",
    "SO_LOG_LEVEL": "logging.level",
    "SO_LOG_FORMAT": "logging.format",
    "SO_API_PORT": "api.port",
    "SO_PUBLIC_URL": "notifications.base_url",
}

_PATH_PREFIX = "SO_CONFIG__"


def _load_env_overrides() -> dict[str, Any]:
    """
    Named SO_* variables map through _ENV_MAPPINGS; SO_CONFIG__A__B=value
    reaches any other key as a.b.
    """
    overrides: dict[str, Any] = {}
    for name, value in os.environ.items():
        if name in _ENV_MAPPINGS:
            dotted = _ENV_MAPPINGS[name]
        elif name.startswith(_PATH_PREFIX):
            dotted = name[len(_PATH_PREFIX):].lower().replace("__", ".")
        else:
            continue
        *parents, leaf = dotted.split(".")
        node = overrides
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = _auto_convert(value)
    return overrides


def _auto_convert(value: str) -> Any:
    lowered = value.lower()
    if lowered in ("true", "yes"):
        return True
    if lowered in ("false", "no"):
        return False
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


# ═══════════════════════════════════════════════════════════════════
# Process-wide Instance
# ═══════════════════════════════════════════════════════════════════

_instance: ConfigLoader | None = None


def get_config(env: str | None = None, project_root: str | None = None) -> ConfigLoader:
    """The shared loader; arguments only matter on the first call."""
    global _instance
    if _instance is None:
        _instance = load_config(
            env=env or os.environ.get("SO_ENV", "dev"),
            project_root=project_root or os.environ.get("SO_PROJECT_ROOT", "."),
        )
    return _instance


def load_config(
    env: str = "dev",
    project_root: str = ".",
    base_files: list[str] | None = None,
) -> ConfigLoader:
    """A fresh loader, independent of the shared one."""
    loader = ConfigLoader(env=env, project_root=project_root, base_files=base_files)
    loader.load()
    return loader


def reset_config():
    global _instance
    _instance = None
