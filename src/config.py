"""Provisioner configuration management.

Configuration is loaded from a YAML settings file, resolved in order:
1. $FEDPROV_CONFIG environment variable
2. $XDG_CONFIG_HOME/fedprov/config.yaml
3. ~/.config/fedprov/config.yaml

A missing file is not an error; defaults apply. Environment variables
FEDPROV_MANIFEST and FEDPROV_STATE override the file, and CLI flags
override both.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


def get_base_dir() -> Path:
    """Get the repository directory."""
    return Path(__file__).parent.parent  # src/ -> repo/


def get_config_dir() -> Path:
    """XDG config directory for fedprov."""
    if xdg := os.environ.get('XDG_CONFIG_HOME'):
        return Path(xdg) / 'fedprov'
    return Path.home() / '.config' / 'fedprov'


def get_state_dir() -> Path:
    """XDG state directory for fedprov."""
    if xdg := os.environ.get('XDG_STATE_HOME'):
        return Path(xdg) / 'fedprov'
    return Path.home() / '.local' / 'state' / 'fedprov'


def default_manifest_path() -> Path:
    """Bundled manifest reproducing the stock Fedora workstation setup."""
    return get_base_dir() / 'manifests' / 'fedora-workstation.yaml'


@dataclass
class ProvisionConfig:
    """Runtime settings for a provisioning run.

    Attributes:
        manifest: Path to the manifest file
        state_path: Path to the JSON state store
        use_sudo: Prefix system-level commands with sudo when not root
        command_timeout: Default per-command timeout in seconds
        download_timeout: Timeout for script downloads in seconds
        log_file: Optional file to mirror log output into
        config_file: Where this config was loaded from (None = defaults)
    """
    manifest: Path = field(default_factory=default_manifest_path)
    state_path: Path = field(default_factory=lambda: get_state_dir() / 'state.json')
    use_sudo: bool = True
    command_timeout: int = 1800
    download_timeout: int = 60
    log_file: Optional[Path] = None
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.manifest, str):
            self.manifest = Path(self.manifest).expanduser()
        if isinstance(self.state_path, str):
            self.state_path = Path(self.state_path).expanduser()
        if isinstance(self.log_file, str):
            self.log_file = Path(self.log_file).expanduser()

    @classmethod
    def from_dict(cls, data: dict, config_file: Optional[Path] = None) -> 'ProvisionConfig':
        """Create ProvisionConfig from a parsed settings mapping.

        Raises:
            ConfigError: On unknown keys or wrongly typed values
        """
        known = {f.name for f in fields(cls)} - {'config_file'}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")

        for key in ('command_timeout', 'download_timeout'):
            if key in data and (not isinstance(data[key], int) or isinstance(data[key], bool)
                                or data[key] <= 0):
                raise ConfigError(f"Config key '{key}' must be a positive integer")
        if 'use_sudo' in data and not isinstance(data['use_sudo'], bool):
            raise ConfigError("Config key 'use_sudo' must be true or false")

        return cls(config_file=config_file, **data)


def find_config_file() -> Optional[Path]:
    """Locate the settings file, or None if there is none."""
    if env_path := os.environ.get('FEDPROV_CONFIG'):
        path = Path(env_path).expanduser()
        if path.exists():
            return path
        raise ConfigError(f"FEDPROV_CONFIG={env_path} does not exist")

    candidate = get_config_dir() / 'config.yaml'
    if candidate.exists():
        return candidate
    return None


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_config(path: Optional[Path] = None) -> ProvisionConfig:
    """Load configuration from file and environment.

    Args:
        path: Explicit settings file (skips discovery)

    Raises:
        ConfigError: If the settings file is unreadable or invalid
    """
    config_file = path or find_config_file()
    data: dict = {}
    if config_file is not None:
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {config_file}")
        data = _parse_yaml(config_file)

    config = ProvisionConfig.from_dict(data, config_file=config_file)

    if manifest := os.environ.get('FEDPROV_MANIFEST'):
        config.manifest = Path(manifest).expanduser()
    if state := os.environ.get('FEDPROV_STATE'):
        config.state_path = Path(state).expanduser()

    return config
