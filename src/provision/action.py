"""Action value objects.

An Action is one unit of desired host state, e.g. "package git is
installed". Its id is derived from kind and target only, so the same
Action keeps its identity (and its persisted record) when the manifest
is reordered.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from provision.errors import InvalidAction, SelfDependency, UnsupportedActionKind


class ActionKind(str, Enum):
    """Supported kinds of provisioning work."""
    INSTALL_PACKAGE = 'InstallPackage'
    ENABLE_REPOSITORY = 'EnableRepository'
    INSTALL_FLATPAK = 'InstallFlatpak'
    ENSURE_SERVICE = 'EnsureService'
    WRITE_FILE = 'WriteFile'
    RUN_ONCE = 'RunOnce'

    @classmethod
    def parse(cls, value: Any) -> 'ActionKind':
        """Parse a kind name; accepts 'InstallPackage' or 'install_package'.

        Raises:
            UnsupportedActionKind: If value names no supported kind
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for kind in cls:
            if text == kind.value or text.lower() == _snake(kind.value):
                return kind
        raise UnsupportedActionKind(text)


def _snake(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return ''
    return str(value)


def make_id(kind: ActionKind, target: str) -> str:
    """Stable action id: '<Kind>:<target>'."""
    return f'{kind.value}:{target}'


def normalize_ref(ref: str) -> str:
    """Normalize a dependency reference to a canonical action id.

    'install_package:git' and 'InstallPackage:git' both become
    'InstallPackage:git'. References whose prefix is not a kind are
    returned unchanged (and later reported as unknown).
    """
    ref = str(ref).strip()
    if ':' not in ref:
        return ref
    prefix, target = ref.split(':', 1)
    try:
        kind = ActionKind.parse(prefix)
    except UnsupportedActionKind:
        return ref
    return make_id(kind, target.strip())


@dataclass(frozen=True)
class Action:
    """An immutable provisioning action.

    Attributes:
        id: '<Kind>:<target>', unique within a plan
        kind: What sort of work this is
        target: Package name, repo id, flatpak ref, unit, path or label
        param_items: Sorted (key, value) pairs; see params
        depends_on: Ids of actions that must succeed first
    """
    id: str
    kind: ActionKind
    target: str
    param_items: tuple[tuple[str, str], ...] = ()
    depends_on: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def create(
        cls,
        kind: Any,
        target: str,
        params: Optional[Mapping[str, Any]] = None,
        depends_on: Iterable[str] = (),
    ) -> 'Action':
        """Build an Action, deriving its id and normalizing inputs.

        Raises:
            UnsupportedActionKind: Unknown kind
            InvalidAction: Empty target
            SelfDependency: depends_on includes the action's own id
        """
        parsed_kind = ActionKind.parse(kind)
        target = str(target or '').strip()
        if not target:
            raise InvalidAction(f"{parsed_kind.value} action requires a target")

        action_id = make_id(parsed_kind, target)
        deps = frozenset(normalize_ref(d) for d in depends_on)
        if action_id in deps:
            raise SelfDependency(action_id)

        items = tuple(sorted((str(k), _stringify(v)) for k, v in (params or {}).items()))
        return cls(
            id=action_id,
            kind=parsed_kind,
            target=target,
            param_items=items,
            depends_on=deps,
        )

    @property
    def params(self) -> dict[str, str]:
        """Copy of the action parameters."""
        return dict(self.param_items)

    def param(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for k, v in self.param_items:
            if k == key:
                return v
        return default

    def flag(self, key: str, default: bool = False) -> bool:
        """Boolean parameter ('true', 'yes', '1' are truthy)."""
        value = self.param(key)
        if value is None:
            return default
        return value.strip().lower() in ('true', 'yes', '1', 'on')

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'kind': self.kind.value,
            'target': self.target,
        }
        if self.param_items:
            d['params'] = self.params
        if self.depends_on:
            d['depends_on'] = sorted(self.depends_on)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Action':
        if 'kind' not in data:
            raise InvalidAction("Action missing required field: kind")
        return cls.create(
            kind=data['kind'],
            target=data.get('target', ''),
            params=data.get('params') or {},
            depends_on=data.get('depends_on') or (),
        )

    def __str__(self) -> str:
        return self.id
