"""Configuration loading for the context recorder.

Supports three tiers:
1. Simple config via .toml or .json - most users
2. Python config via .py - adds hook_* functions subscribed to recorder events
3. Constructing ProjectConfig directly - embedding and tests
"""

from __future__ import annotations

import importlib.util
import json
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .locking import atomic_write_text

DEFAULT_STORAGE_DIR = ".ccr"
DEFAULT_DATABASE = "contexts.db"
DEFAULT_CONFIG_NAME = ".ccrrc.json"


@dataclass
class SearchConfig:
    """Search index and query settings."""
    fuzzy: float = 0.2                  # edit distance as a fraction of token length
    prefix: bool = True
    boost: dict[str, float] = field(default_factory=lambda: {"content": 2.0, "tags": 3.0})
    default_limit: int = 50
    content_search_limit: int = 100
    suggestion_limit: int = 10
    build_on_open: bool = True


@dataclass
class AnalyticsConfig:
    """Analytics window and list sizes."""
    trend_days: int = 30
    top_files: int = 10
    top_authors: int = 5


@dataclass
class ProjectConfig:
    """Configuration for a project's context store."""

    project_name: str = "unnamed"
    project_root: Path = field(default_factory=Path.cwd)

    # Storage (relative to project_root)
    storage_dir: str = DEFAULT_STORAGE_DIR
    database: str = DEFAULT_DATABASE
    lock_timeout: float = 10.0

    search: SearchConfig = field(default_factory=SearchConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)

    log_level: str = "WARNING"

    # Event hooks (populated from Python config): event name -> callable
    hooks: dict[str, Callable] = field(default_factory=dict)

    def get_storage_path(self) -> Path:
        return self.project_root / self.storage_dir

    def get_database_path(self) -> Path:
        return self.get_storage_path() / self.database


def load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_json_config(path: Path) -> dict[str, Any]:
    """Load configuration from JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_python_config(path: Path) -> tuple[dict[str, Any], dict[str, Callable]]:
    """Load configuration from Python file.

    Returns:
        Tuple of (config_dict, hooks_dict)

    Convention:
        - CONFIG dict or config dict for static configuration
        - Functions named hook_<event> become event hooks, e.g.
          hook_entry_added(recorder, entry)
    """
    spec = importlib.util.spec_from_file_location("context_config", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load Python config from {path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules["context_config"] = module
    spec.loader.exec_module(module)

    config_dict = {}
    if hasattr(module, "CONFIG"):
        config_dict = module.CONFIG
    elif hasattr(module, "config"):
        config_dict = module.config

    hooks = {}
    for name in dir(module):
        if name.startswith("hook_"):
            hooks[name[5:]] = getattr(module, name)

    return config_dict, hooks


def dict_to_config(data: dict[str, Any], project_root: Path) -> ProjectConfig:
    """Convert dictionary to ProjectConfig.

    Besides the sectioned layout, the flat ``storagePath`` key written by
    older ``.ccrrc.json`` files is honoured.
    """
    config = ProjectConfig(project_root=project_root)

    if "project" in data:
        proj = data["project"]
        if "name" in proj:
            config.project_name = proj["name"]

    if "storagePath" in data:
        config.storage_dir = str(data["storagePath"])

    if "storage" in data:
        storage = data["storage"]
        if "dir" in storage:
            config.storage_dir = storage["dir"]
        if "database" in storage:
            config.database = storage["database"]
        if "lock_timeout" in storage:
            config.lock_timeout = float(storage["lock_timeout"])

    if "search" in data:
        search = data["search"]
        if "fuzzy" in search:
            fuzzy = float(search["fuzzy"])
            if not 0 <= fuzzy < 1:
                raise ValueError(f"search.fuzzy must be in [0, 1): {fuzzy}")
            config.search.fuzzy = fuzzy
        if "prefix" in search:
            config.search.prefix = bool(search["prefix"])
        if "boost" in search:
            config.search.boost.update({k: float(v) for k, v in search["boost"].items()})
        for key in ("default_limit", "content_search_limit", "suggestion_limit"):
            if key in search:
                setattr(config.search, key, int(search[key]))
        if "build_on_open" in search:
            config.search.build_on_open = bool(search["build_on_open"])

    if "analytics" in data:
        analytics = data["analytics"]
        for key in ("trend_days", "top_files", "top_authors"):
            if key in analytics:
                value = int(analytics[key])
                if value < 1:
                    raise ValueError(f"analytics.{key} must be positive: {value}")
                setattr(config.analytics, key, value)

    if "logging" in data:
        if "level" in data["logging"]:
            config.log_level = str(data["logging"]["level"]).upper()

    return config


def config_to_dict(config: ProjectConfig) -> dict[str, Any]:
    """Sectioned dict form of a config, as written by write_default_config()."""
    return {
        "project": {"name": config.project_name},
        "storage": {
            "dir": config.storage_dir,
            "database": config.database,
            "lock_timeout": config.lock_timeout,
        },
        "search": {
            "fuzzy": config.search.fuzzy,
            "prefix": config.search.prefix,
            "boost": dict(config.search.boost),
            "default_limit": config.search.default_limit,
            "content_search_limit": config.search.content_search_limit,
            "suggestion_limit": config.search.suggestion_limit,
            "build_on_open": config.search.build_on_open,
        },
        "analytics": {
            "trend_days": config.analytics.trend_days,
            "top_files": config.analytics.top_files,
            "top_authors": config.analytics.top_authors,
        },
        "logging": {"level": config.log_level},
    }


def find_config_file(project_root: Path) -> Optional[Path]:
    """Find configuration file in project root.

    Search order:
    1. context_config.py (most flexible)
    2. context_config.toml
    3. context_config.json
    4. .ccrrc.toml
    5. .ccrrc.json
    """
    candidates = [
        "context_config.py",
        "context_config.toml",
        "context_config.json",
        ".ccrrc.toml",
        DEFAULT_CONFIG_NAME,
    ]

    for name in candidates:
        path = project_root / name
        if path.exists():
            return path

    return None


def find_project_root(start: Optional[Path] = None) -> Path:
    """Nearest directory at or above `start` containing .git.

    Falls back to `start` (default: cwd) when there is none.
    """
    start = (start or Path.cwd()).resolve()
    for directory in (start, *start.parents):
        if (directory / ".git").exists():
            return directory
    return start


def load_config(project_root: Path, config_path: Optional[Path] = None) -> ProjectConfig:
    """Load project configuration.

    Args:
        project_root: Root directory of the project
        config_path: Optional explicit path to config file

    Returns:
        ProjectConfig instance
    """
    if config_path is None:
        config_path = find_config_file(project_root)

    if config_path is None:
        return ProjectConfig(project_root=project_root)

    suffix = config_path.suffix.lower()

    if suffix == ".py":
        config_dict, hooks = load_python_config(config_path)
        config = dict_to_config(config_dict, project_root)
        config.hooks = hooks
        return config

    elif suffix == ".toml":
        return dict_to_config(load_toml_config(config_path), project_root)

    elif suffix == ".json":
        return dict_to_config(load_json_config(config_path), project_root)

    else:
        raise ValueError(f"Unsupported config file type: {suffix}")


def write_default_config(project_root: Path, overwrite: bool = False) -> Optional[Path]:
    """Write a default .ccrrc.json into `project_root`.

    Returns:
        The path written, or None if a file already exists and
        `overwrite` is False
    """
    path = project_root / DEFAULT_CONFIG_NAME
    if path.exists() and not overwrite:
        return None
    config = ProjectConfig(project_name=project_root.name, project_root=project_root)
    atomic_write_text(path, json.dumps(config_to_dict(config), indent=2) + "\n")
    return path
