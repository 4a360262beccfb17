"""
Configuration loading and validation for the implementation loop.

This module handles:
- Loading config.yaml from the repo root
- Environment variable resolution (${VAR} syntax)
- Validation of required fields
- Default values for optional fields
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


@dataclass
class GitHubConfig:
    """GitHub issue that hosts the shared comment thread."""
    repo: str = ""                             # Repository in "owner/repo" format
    issue_number: int = 0                      # Issue whose comments form the log
    binary: str = "gh"                         # Path to gh binary
    timeout_seconds: int = 30                  # Per-command timeout


@dataclass
class CompactionConfig:
    """Compaction summary configuration."""
    summary_every_n_task_logs: int = 5         # Default threshold for new documents
    read_window: int = 100                     # Comments scanned when summarizing


@dataclass
class VerificationConfig:
    """Task log verification configuration."""
    window: int = 5                            # Recent comments scanned (covers retries)


@dataclass
class WispConfig:
    """Ephemeral hint configuration."""
    ttl_minutes: int = 120                     # Default lifetime of a new wisp
    read_window: int = 100                     # Comments scanned for active wisps
    title_max_chars: int = 60                  # Note prefix used for promoted task titles


@dataclass
class LoopConfig:
    """
    Main configuration for the implementation loop.

    This is the top-level config loaded from config.yaml.
    """
    # Paths
    repo_root: str = "."
    loop_dir: str = ".issues-loop"
    state_file: str = "prd.json"

    # Nested configurations
    github: GitHubConfig = field(default_factory=GitHubConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    wisps: WispConfig = field(default_factory=WispConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def loop_path(self) -> Path:
        """Absolute path to the loop's working directory."""
        return Path(self.repo_root) / self.loop_dir

    @property
    def state_path(self) -> Path:
        """Absolute path to the task graph document."""
        return Path(self.repo_root) / self.state_file

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.loop_path / "logs"


# Module-level cache for the loaded configuration
_config_cache: Optional[LoopConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _positive_int(data: dict[str, Any], key: str, default: int, section: str) -> int:
    """Read a positive integer option, rejecting zero, negatives and non-ints."""
    value = data.get(key, default)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be an integer, got {value!r}")
    if number < 1:
        raise ConfigError(f"{section}.{key} must be >= 1, got {number}")
    return number


def _parse_github_config(data: dict[str, Any]) -> GitHubConfig:
    """Parse GitHub configuration from dict."""
    if not data.get("repo"):
        raise ConfigError("github.repo is required")
    return GitHubConfig(
        repo=data["repo"],
        issue_number=int(data.get("issue_number", 0) or 0),
        binary=data.get("binary", "gh"),
        timeout_seconds=_positive_int(data, "timeout_seconds", 30, "github"),
    )


def _parse_compaction_config(data: dict[str, Any]) -> CompactionConfig:
    """Parse compaction configuration from dict."""
    return CompactionConfig(
        summary_every_n_task_logs=_positive_int(
            data, "summary_every_n_task_logs", 5, "compaction"
        ),
        read_window=_positive_int(data, "read_window", 100, "compaction"),
    )


def _parse_verification_config(data: dict[str, Any]) -> VerificationConfig:
    """Parse verification configuration from dict."""
    return VerificationConfig(
        window=_positive_int(data, "window", 5, "verification"),
    )


def _parse_wisp_config(data: dict[str, Any]) -> WispConfig:
    """Parse wisp configuration from dict."""
    return WispConfig(
        ttl_minutes=_positive_int(data, "ttl_minutes", 120, "wisps"),
        read_window=_positive_int(data, "read_window", 100, "wisps"),
        title_max_chars=_positive_int(data, "title_max_chars", 60, "wisps"),
    )


def load_config(config_path: Optional[str] = None) -> LoopConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for config.yaml in current directory.

    Returns:
        LoopConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = "config.yaml"

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError("Configuration file is empty")

    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    if "github" not in data:
        raise ConfigError("Missing required section: github")

    return LoopConfig(
        repo_root=data.get("repo_root", "."),
        loop_dir=data.get("loop_dir", ".issues-loop"),
        state_file=data.get("state_file", "prd.json"),
        github=_parse_github_config(data.get("github") or {}),
        compaction=_parse_compaction_config(data.get("compaction") or {}),
        verification=_parse_verification_config(data.get("verification") or {}),
        wisps=_parse_wisp_config(data.get("wisps") or {}),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> LoopConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        config_path: Optional path to config file.
        force_reload: If True, reload configuration even if cached.

    Returns:
        LoopConfig: The loaded configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
