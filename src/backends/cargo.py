"""Rust toolchain adapters: cargo crates and rustup components."""

import shutil
from pathlib import Path
from typing import Optional

from backends import register_backend
from backends.base import BackendUnavailable, CommandBackend, env_params
from common import Outcome, run_command
from provision.action import Action, ActionKind

CARGO_BIN = Path.home() / '.cargo' / 'bin'


class _RustupToolBackend(CommandBackend):
    """Finds tools in ~/.cargo/bin, where rustup installs them, as well as PATH."""

    def require_tool(self, tool: Optional[str] = None) -> str:
        tool = tool or self.tool
        path = shutil.which(tool) or shutil.which(tool, path=str(CARGO_BIN))
        if path is None:
            raise BackendUnavailable(tool)
        return path


@register_backend()
class CargoBackend(_RustupToolBackend):
    """Installs crates with 'cargo install' (InstallPackage, backend: cargo).

    Params:
        locked: Pass --locked (default true)
        env.<NAME>: Build environment, e.g. env.OPENSSL_NO_VENDOR: "1"
    """
    name = 'cargo'
    kinds = frozenset({ActionKind.INSTALL_PACKAGE})
    tool = 'cargo'

    def probe(self, action: Action) -> bool:
        cargo = self.require_tool()
        rc, out, _ = run_command([cargo, 'install', '--list'], timeout=60)
        if rc != 0:
            return False
        prefix = f'{action.target} v'
        return any(line.startswith(prefix) for line in out.splitlines())

    def apply(self, action: Action) -> Outcome:
        if self.probe(action):
            return Outcome(changed=False, detail='already installed')
        cmd = [self.require_tool(), 'install']
        if action.flag('locked', True):
            cmd.append('--locked')
        cmd.append(action.target)
        self.execute(action, cmd, env=env_params(action) or None)
        return Outcome(changed=True, detail='installed')


@register_backend()
class RustupBackend(_RustupToolBackend):
    """Adds toolchain components (InstallPackage, backend: rustup)."""
    name = 'rustup'
    kinds = frozenset({ActionKind.INSTALL_PACKAGE})
    tool = 'rustup'

    def probe(self, action: Action) -> bool:
        rustup = self.require_tool()
        rc, out, _ = run_command([rustup, 'component', 'list', '--installed'], timeout=60)
        if rc != 0:
            return False
        # Installed components are listed with a target triple suffix
        return any(line == action.target or line.startswith(f'{action.target}-')
                   for line in out.split())

    def apply(self, action: Action) -> Outcome:
        if self.probe(action):
            return Outcome(changed=False, detail='already installed')
        self.execute(action, [self.require_tool(), 'component', 'add', action.target])
        return Outcome(changed=True, detail='component added')
