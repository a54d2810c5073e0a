"""
Configuration management for qscan.

Settings are layered, highest priority first: command-line flags,
environment variables (optionally seeded from a .env file), the user
config file (~/.config/qscan/config.yaml) and built-in defaults.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from qscan.core.models import ScanInvocationOptions
from qscan.exceptions import ConfigurationError

DEFAULT_SCAN_TYPES = "pkg,fileinsight"
DEFAULT_MODE = "get-report"
DEFAULT_OUTPUT_DIR = "./reports"
INVENTORY_ONLY_MODE = "inventory-only"

# Config attribute -> environment variable
ENV_VARS = {
    "token": "QUALYS_ACCESS_TOKEN",
    "pod": "QUALYS_POD",
    "scan_types": "SCAN_TYPES",
    "output_dir": "OUTPUT_DIR",
    "mode": "QSCAN_MODE",
    "format": "QSCAN_FORMAT",
    "engine_path": "QSCAN_ENGINE",
    "engine_archive": "QSCAN_ENGINE_ARCHIVE",
    "cache_dir": "QSCAN_CACHE_DIR",
    "log_level": "LOG_LEVEL",
    "log_format": "LOG_FORMAT",
}

# Config attribute -> (section, key) in config.yaml
FILE_KEYS = {
    "token": ("qualys", "token"),
    "pod": ("qualys", "pod"),
    "scan_types": ("defaults", "scan_types"),
    "mode": ("defaults", "mode"),
    "format": ("defaults", "format"),
    "output_dir": ("defaults", "output_dir"),
    "engine_path": ("engine", "path"),
    "engine_archive": ("engine", "archive"),
    "cache_dir": ("engine", "cache_dir"),
    "timeout": ("engine", "timeout"),
    "log_level": ("logging", "level"),
    "log_format": ("logging", "format"),
}


def default_config_path() -> Path:
    return Path.home() / ".config" / "qscan" / "config.yaml"


@dataclass
class Config:
    """Application configuration."""

    # Qualys platform
    token: str = ""
    pod: str = ""

    # Scan defaults
    scan_types: str = DEFAULT_SCAN_TYPES
    mode: str = DEFAULT_MODE
    format: str = ""
    output_dir: str = DEFAULT_OUTPUT_DIR

    # Engine
    engine_path: str = ""
    engine_archive: str = ""
    cache_dir: str = ""
    timeout: Optional[float] = None

    # Logging
    log_level: str = "WARNING"
    log_format: str = "text"

    def validate(self):
        """
        Check that credentials are present.

        inventory-only mode never talks to the platform, so it needs neither.

        Raises:
            ConfigurationError: token or POD missing
        """
        if self.mode == INVENTORY_ONLY_MODE:
            return
        if not self.token:
            raise ConfigurationError(
                "Qualys access token required. Set via --token, QUALYS_ACCESS_TOKEN, or config file"
            )
        if not self.pod:
            raise ConfigurationError(
                "Qualys POD required. Set via --pod, QUALYS_POD, or config file"
            )

    def to_options(self, engine_path: str, quiet: bool = False) -> ScanInvocationOptions:
        """Snapshot the settings the orchestrator needs."""
        return ScanInvocationOptions(
            engine_path=str(engine_path),
            token=self.token,
            pod=self.pod,
            scan_types=self.scan_types,
            mode=self.mode,
            formats=self.format,
            output_dir=self.output_dir or DEFAULT_OUTPUT_DIR,
            quiet=quiet,
            timeout=self.timeout,
        )


def read_config_file(path: Path) -> Dict[str, Any]:
    """
    Read config.yaml into flat Config attributes.

    A missing file is not an error; an unreadable or malformed one is.
    """
    if not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"failed to read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a mapping")

    values: Dict[str, Any] = {}
    for attr, (section, key) in FILE_KEYS.items():
        block = data.get(section) or {}
        if isinstance(block, dict) and block.get(key) not in (None, ""):
            values[attr] = str(block[key])
    return values


def load_config(
    config_file: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    env_file: Optional[str] = None,
) -> Config:
    """
    Build a Config from all sources.

    Args:
        config_file: Explicit config file (default: ~/.config/qscan/config.yaml)
        overrides: Values from command-line flags; None or "" means unset
        environ: Environment mapping (default: os.environ)
        env_file: .env file to load into the environment first

    Raises:
        ConfigurationError: An explicit config file is missing or malformed
    """
    if env_file:
        load_dotenv(env_file, override=False)
    if environ is None:
        environ = os.environ

    if config_file:
        path = Path(config_file).expanduser()
        if not path.exists():
            raise ConfigurationError(f"config file not found: {path}")
    else:
        path = default_config_path()

    values: Dict[str, Any] = read_config_file(path)

    for attr, var in ENV_VARS.items():
        if environ.get(var):
            values[attr] = environ[var]

    for attr, value in (overrides or {}).items():
        if value not in (None, ""):
            values[attr] = value

    known = {f.name for f in fields(Config)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"unknown configuration keys: {', '.join(sorted(unknown))}")

    if values.get("timeout") is not None:
        try:
            values["timeout"] = float(values["timeout"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid timeout: {values['timeout']}") from e

    return Config(**values)
