"""systemd adapter: enable and start units."""

from backends import register_backend
from backends.base import ApplyFailed, CommandBackend
from common import Outcome
from provision.action import Action, ActionKind


@register_backend(ActionKind.ENSURE_SERVICE)
class SystemdBackend(CommandBackend):
    """Ensures a unit is enabled and/or running.

    Params:
        scope: 'system' (default) or 'user' (systemctl --user, no sudo)
        enabled: Unit enabled at boot/login (default true)
        started: Unit running now (default true)
    """
    name = 'systemd'
    kinds = frozenset({ActionKind.ENSURE_SERVICE})
    tool = 'systemctl'

    def _base(self, action: Action) -> list[str]:
        scope = action.param('scope', 'system')
        if scope == 'user':
            return ['systemctl', '--user']
        if scope == 'system':
            return ['systemctl']
        raise ApplyFailed(f"Invalid systemd scope '{scope}' for {action.id}")

    def probe(self, action: Action) -> bool:
        self.require_tool()
        base = self._base(action)
        if action.flag('enabled', True) and not self.check(base + ['is-enabled', '--quiet', action.target]):
            return False
        if action.flag('started', True) and not self.check(base + ['is-active', '--quiet', action.target]):
            return False
        return True

    def apply(self, action: Action) -> Outcome:
        if self.probe(action):
            return Outcome(changed=False, detail='already in desired state')

        base = self._base(action)
        enable = action.flag('enabled', True)
        start = action.flag('started', True)
        if enable:
            cmd = base + ['enable'] + (['--now'] if start else []) + [action.target]
        elif start:
            cmd = base + ['start', action.target]
        else:
            return Outcome(changed=False, detail='nothing requested')

        if base[1:2] != ['--user']:
            cmd = self.privileged(cmd)
        self.execute(action, cmd)
        return Outcome(changed=True, detail=' and '.join(
            s for s, wanted in (('enabled', enable), ('started', start)) if wanted))
