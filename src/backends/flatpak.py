"""Flatpak adapter: applications and remotes."""

import logging

from backends import register_backend
from backends.base import ApplyFailed, CommandBackend
from common import Outcome, run_command
from provision.action import Action, ActionKind

logger = logging.getLogger(__name__)


@register_backend(ActionKind.INSTALL_FLATPAK)
class FlatpakBackend(CommandBackend):
    """Installs Flatpak applications and adds remotes.

    Params:
        scope: 'system' (default, needs sudo) or 'user'
        remote: Remote to install from (InstallFlatpak, default 'flathub')
        url: .flatpakrepo URL (EnableRepository with backend: flatpak)
    """
    name = 'flatpak'
    kinds = frozenset({ActionKind.INSTALL_FLATPAK, ActionKind.ENABLE_REPOSITORY})
    tool = 'flatpak'

    def _scope(self, action: Action) -> str:
        scope = action.param('scope', 'system')
        if scope not in ('system', 'user'):
            raise ApplyFailed(f"Invalid flatpak scope '{scope}' for {action.id}")
        return scope

    def _cmd(self, action: Action, args: list[str]) -> list[str]:
        scope = self._scope(action)
        cmd = ['flatpak'] + args[:1] + [f'--{scope}'] + args[1:]
        return self.privileged(cmd) if scope == 'system' else cmd

    def probe(self, action: Action) -> bool:
        self.require_tool()
        scope = self._scope(action)
        if action.kind == ActionKind.INSTALL_FLATPAK:
            return self.check(['flatpak', 'info', f'--{scope}', action.target])
        return self._remote_enabled(action.target, scope)

    def _remote_enabled(self, remote: str, scope: str) -> bool:
        rc, out, _ = run_command(
            ['flatpak', 'remotes', f'--{scope}', '--columns=name,options'], timeout=60)
        if rc != 0:
            return False
        for line in out.splitlines():
            parts = line.split()
            if parts and parts[0] == remote:
                options = ','.join(parts[1:]).split(',')
                return 'disabled' not in options
        return False

    def apply(self, action: Action) -> Outcome:
        if self.probe(action):
            detail = 'already installed' if action.kind == ActionKind.INSTALL_FLATPAK else 'already enabled'
            return Outcome(changed=False, detail=detail)

        if action.kind == ActionKind.INSTALL_FLATPAK:
            remote = action.param('remote', 'flathub')
            self.execute(action, self._cmd(
                action, ['install', '-y', '--noninteractive', remote, action.target]))
            return Outcome(changed=True, detail=f'installed from {remote}')

        url = action.param('url')
        if not url:
            raise ApplyFailed(f"{action.id} needs a 'url' param to add the remote")
        self.execute(action, self._cmd(action, ['remote-add', '--if-not-exists', action.target, url]))
        # remote-add leaves a previously disabled remote disabled
        self.execute(action, self._cmd(action, ['remote-modify', '--enable', action.target]))
        return Outcome(changed=True, detail=f'added remote {action.target}')
