"""Backend adapters and their registry.

Each adapter class registers itself for the action kinds it handles.
The adapter for an action is picked by its kind, unless the action's
'backend' param names a specific adapter (e.g. InstallPackage with
backend: cargo).
"""

from typing import Optional

from backends.base import (
    ApplyFailed,
    BackendAdapter,
    BackendError,
    BackendUnavailable,
    CommandBackend,
)
from provision.action import Action, ActionKind
from provision.errors import PlanError


class UnknownBackend(PlanError):
    """Action names a backend that does not exist or cannot handle its kind."""


# Registry of adapter classes, by name
_backends: dict[str, type] = {}
# Default adapter name per kind
_defaults: dict[ActionKind, str] = {}


def register_backend(*default_for: ActionKind):
    """Decorator to register an adapter class.

    Args:
        default_for: Kinds this adapter handles when no backend param is set
    """
    def decorator(cls: type) -> type:
        _backends[cls.name] = cls
        for kind in default_for:
            _defaults[kind] = cls.name
        return cls
    return decorator


def list_backends() -> list[str]:
    return sorted(_backends.keys())


def backend_name_for(action: Action) -> str:
    """Resolve which adapter handles an action.

    Raises:
        UnknownBackend: Unknown name, or adapter does not support the kind
    """
    name = action.param('backend') or _defaults.get(action.kind)
    if name is None or name not in _backends:
        raise UnknownBackend(
            f"No backend '{name}' for {action.id}. Available: {', '.join(list_backends())}"
        )
    if action.kind not in _backends[name].kinds:
        raise UnknownBackend(f"Backend '{name}' does not support {action.kind.value} ({action.id})")
    return name


class AdapterSet:
    """Lazily constructed adapter instances sharing one configuration."""

    def __init__(self, use_sudo: bool = True, command_timeout: int = 1800,
                 download_timeout: int = 60,
                 overrides: Optional[dict[str, BackendAdapter]] = None):
        self.use_sudo = use_sudo
        self.command_timeout = command_timeout
        self.download_timeout = download_timeout
        self._instances: dict[str, BackendAdapter] = dict(overrides or {})

    @classmethod
    def from_config(cls, config) -> 'AdapterSet':
        return cls(
            use_sudo=config.use_sudo,
            command_timeout=config.command_timeout,
            download_timeout=config.download_timeout,
        )

    def for_action(self, action: Action) -> BackendAdapter:
        name = action.param('backend') or _defaults.get(action.kind)
        if name in self._instances:
            return self._instances[name]
        name = backend_name_for(action)
        adapter_cls = _backends[name]
        kwargs = {'use_sudo': self.use_sudo, 'timeout': self.command_timeout}
        if getattr(adapter_cls, 'accepts_download_timeout', False):
            kwargs['download_timeout'] = self.download_timeout
        adapter = adapter_cls(**kwargs)
        self._instances[name] = adapter
        return adapter


def validate_backends(actions) -> None:
    """Check every action maps to an adapter; raises UnknownBackend."""
    for action in actions:
        backend_name_for(action)


# Import adapters to trigger registration
from backends import dnf  # noqa: E402, F401
from backends import flatpak  # noqa: E402, F401
from backends import systemd  # noqa: E402, F401
from backends import files  # noqa: E402, F401
from backends import shell  # noqa: E402, F401
from backends import cargo  # noqa: E402, F401

__all__ = [
    'AdapterSet',
    'ApplyFailed',
    'BackendAdapter',
    'BackendError',
    'BackendUnavailable',
    'CommandBackend',
    'UnknownBackend',
    'backend_name_for',
    'list_backends',
    'register_backend',
    'validate_backends',
]
