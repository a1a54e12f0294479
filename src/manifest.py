"""Manifest loading and validation for workstation provisioning.

A manifest is a YAML (or JSON) document listing the desired actions:

    schema_version: 1
    name: fedora-workstation
    settings:
      continue_on_failure: false
    defaults:
      InstallPackage: {skip_unavailable: true}
    actions:
      - kind: InstallPackage
        targets: [git, tmux]
      - kind: EnableRepository
        target: flathub
        params: {backend: flatpak, url: https://flathub.org/repo/flathub.flatpakrepo}
      - kind: InstallFlatpak
        target: org.signal.Signal
        depends_on: [EnableRepository:flathub]

Manifests are consumed once at startup; the resulting Actions are
immutable.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError
from provision.action import Action, ActionKind, InvalidAction

logger = logging.getLogger(__name__)

# Supported schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}


class ManifestError(ConfigError):
    """Manifest is missing, unparseable or structurally invalid."""


_TRUE_STRINGS = ('true', 'yes', '1', 'on')
_FALSE_STRINGS = ('false', 'no', '0', 'off', '')


def _as_bool(value: Any, what: str) -> bool:
    """Strict boolean: real booleans or the usual true/false strings."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (str, int)):
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ManifestError(f"Manifest '{what}' must be true or false, got {value!r}")


@dataclass
class ManifestSettings:
    """Optional settings for manifest execution.

    Attributes:
        continue_on_failure: Default for --continue-on-failure (default: False)
    """
    continue_on_failure: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ManifestSettings':
        """Create ManifestSettings from dictionary."""
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ManifestError("Manifest 'settings' must be a mapping")
        return cls(
            continue_on_failure=_as_bool(data.get('continue_on_failure', False),
                                         'settings.continue_on_failure'),
        )


@dataclass
class Manifest:
    """Provisioning manifest.

    Attributes:
        schema_version: Manifest schema version
        name: Human-readable manifest name
        actions: Actions in declaration order
        description: Optional description
        settings: Optional execution settings
        source_path: Path where manifest was loaded from (for debugging)
    """
    schema_version: int
    name: str
    actions: list[Action]
    description: str = ''
    settings: ManifestSettings = field(default_factory=ManifestSettings)
    source_path: Optional[Path] = None

    def to_dict(self) -> dict:
        """Convert manifest to dictionary (for JSON serialization)."""
        return {
            'schema_version': self.schema_version,
            'name': self.name,
            'description': self.description,
            'settings': {'continue_on_failure': self.settings.continue_on_failure},
            'actions': [a.to_dict() for a in self.actions],
        }

    def to_json(self) -> str:
        """Serialize manifest to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from dictionary.

        Args:
            data: Manifest data dictionary
            source_path: Source file; relative WriteFile sources resolve against its directory

        Returns:
            Manifest instance

        Raises:
            ManifestError: If manifest structure is invalid
            PlanError: If an action is invalid (unsupported kind, self dependency)
        """
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a mapping")

        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ManifestError(
                f"Unsupported manifest schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise ManifestError("Manifest missing required field: name")
        if 'actions' not in data:
            raise ManifestError("Manifest missing required field: actions")
        if not isinstance(data['actions'], list) or not data['actions']:
            raise ManifestError("Manifest must have at least one action")

        defaults = _parse_defaults(data.get('defaults'))
        base_dir = source_path.parent if source_path else None

        actions: list[Action] = []
        for i, entry in enumerate(data['actions']):
            actions.extend(_parse_entry(i, entry, defaults, base_dir))

        return cls(
            schema_version=schema_version,
            name=str(data['name']),
            description=data.get('description', ''),
            actions=actions,
            settings=ManifestSettings.from_dict(data.get('settings')),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """Create Manifest from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Invalid manifest JSON: {e}")
        return cls.from_dict(data)


def _parse_defaults(data: Any) -> dict[ActionKind, dict]:
    """Parse per-kind default params."""
    if not data:
        return {}
    if not isinstance(data, dict):
        raise ManifestError("Manifest 'defaults' must be a mapping of kind to params")
    defaults: dict[ActionKind, dict] = {}
    for kind_name, params in data.items():
        if not isinstance(params, dict):
            raise ManifestError(f"Defaults for '{kind_name}' must be a mapping")
        defaults[ActionKind.parse(kind_name)] = params
    return defaults


def _as_list(value: Any, what: str, index: int) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return value
    raise ManifestError(f"Action {index}: '{what}' must be a string or list")


def _parse_entry(index: int, entry: Any, defaults: dict[ActionKind, dict],
                 base_dir: Optional[Path]) -> list[Action]:
    """Expand one manifest entry into one or more Actions."""
    if not isinstance(entry, dict):
        raise ManifestError(f"Action {index} must be a mapping")
    if 'kind' not in entry:
        raise ManifestError(f"Action {index} missing required field: kind")

    kind = ActionKind.parse(entry['kind'])

    has_target = 'target' in entry
    targets = _as_list(entry.get('targets'), 'targets', index)
    if has_target and targets:
        raise ManifestError(f"Action {index} ({kind.value}) has both 'target' and 'targets'")
    if has_target:
        targets = [entry['target']]
    if not targets:
        raise ManifestError(f"Action {index} ({kind.value}) missing required field: target")

    params = entry.get('params') or {}
    if not isinstance(params, dict):
        raise ManifestError(f"Action {index} ({kind.value}): 'params' must be a mapping")
    merged = {**defaults.get(kind, {}), **params}

    # env: {NAME: value} is carried as flat 'env.NAME' params
    env = merged.pop('env', None)
    if env is not None:
        if not isinstance(env, dict):
            raise ManifestError(f"Action {index} ({kind.value}): 'env' must be a mapping")
        merged.update({f'env.{name}': value for name, value in env.items()})

    if kind == ActionKind.WRITE_FILE and 'source' in merged and base_dir is not None:
        source = Path(str(merged['source'])).expanduser()
        if not source.is_absolute():
            merged['source'] = str(base_dir / source)

    depends_on = _as_list(entry.get('depends_on'), 'depends_on', index)

    actions = []
    for target in targets:
        if target is None or str(target).strip() == '':
            raise InvalidAction(f"Action {index} ({kind.value}) has an empty target")
        actions.append(Action.create(kind, str(target), params=merged, depends_on=depends_on))
    return actions


def load_manifest(
    file_path: Optional[Path] = None,
    json_str: Optional[str] = None,
) -> Manifest:
    """Load manifest from a file or an inline JSON string.

    Priority:
    1. json_str - Inline JSON
    2. file_path - YAML or JSON file

    Raises:
        ManifestError: If manifest not found or invalid
    """
    if json_str:
        return Manifest.from_json(json_str)
    if file_path is None:
        raise ManifestError("No manifest given")

    path = Path(file_path).expanduser()
    if not path.exists():
        raise ManifestError(f"Manifest file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            if path.suffix == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ManifestError(f"Invalid manifest {path}: {e}")

    manifest = Manifest.from_dict(data, source_path=path.resolve())
    logger.debug(f"Loaded manifest '{manifest.name}' with {len(manifest.actions)} actions from {path}")
    return manifest
