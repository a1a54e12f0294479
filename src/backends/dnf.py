"""DNF adapter: RPM packages and repositories."""

import logging
import re

from backends import register_backend
from backends.base import ApplyFailed, CommandBackend
from common import Outcome, run_command
from provision.action import Action, ActionKind

logger = logging.getLogger(__name__)

COPR_PREFIX = 'copr:'


@register_backend(ActionKind.INSTALL_PACKAGE, ActionKind.ENABLE_REPOSITORY)
class DnfBackend(CommandBackend):
    """Installs packages and enables repositories with dnf.

    InstallPackage params:
        skip_unavailable: Pass --skip-unavailable; a missing package is not an error
        allowerasing: Pass --allowerasing

    EnableRepository targets and params:
        copr:<owner>/<project>: Enabled with 'dnf copr enable'
        release_url: Repo release RPM to install (RPM Fusion style). '{fedora}'
            is replaced with the running Fedora release.
        package: Name of the release package, used to probe release_url repos
        otherwise: existing repo id switched on with config-manager
    """
    name = 'dnf'
    kinds = frozenset({ActionKind.INSTALL_PACKAGE, ActionKind.ENABLE_REPOSITORY})
    tool = 'dnf'

    def probe(self, action: Action) -> bool:
        if action.kind == ActionKind.INSTALL_PACKAGE:
            return self._package_installed(action.target)
        return self._repo_enabled(action)

    def apply(self, action: Action) -> Outcome:
        self.require_tool()
        if action.kind == ActionKind.INSTALL_PACKAGE:
            return self._install_package(action)
        return self._enable_repository(action)

    def _package_installed(self, name: str) -> bool:
        self.require_tool('rpm')
        return self.check(['rpm', '-q', '--whatprovides', name])

    def _install_package(self, action: Action) -> Outcome:
        if self._package_installed(action.target):
            return Outcome(changed=False, detail='already installed')

        cmd = ['dnf', 'install', '-y']
        if action.flag('skip_unavailable'):
            cmd.append('--skip-unavailable')
        if action.flag('allowerasing'):
            cmd.append('--allowerasing')
        cmd.append(action.target)
        self.execute(action, self.privileged(cmd))

        if not self._package_installed(action.target):
            if action.flag('skip_unavailable'):
                logger.warning(f"[{action.id}] Package not available, skipped")
                return Outcome(changed=False, detail='not available in enabled repositories',
                               satisfied=False)
            raise ApplyFailed(f"dnf reported success but '{action.target}' is not installed")
        return Outcome(changed=True, detail='installed')

    def _repo_enabled(self, action: Action) -> bool:
        if action.param('release_url'):
            package = action.param('package') or action.target
            return self._package_installed(package)

        self.require_tool()
        rc, out, _ = run_command(['dnf', 'repolist', '--enabled'], timeout=120)
        if rc != 0:
            return False
        wanted = _repo_id_pattern(action.target)
        return any(wanted.search(line.split()[0]) for line in out.splitlines()[1:] if line.strip())

    def _enable_repository(self, action: Action) -> Outcome:
        if self._repo_enabled(action):
            return Outcome(changed=False, detail='already enabled')

        target = action.target
        if release_url := action.param('release_url'):
            url = release_url.replace('{fedora}', self._fedora_release())
            self.execute(action, self.privileged(['dnf', 'install', '-y', url]))
            return Outcome(changed=True, detail=f'installed {url.rsplit("/", 1)[-1]}')

        if target.startswith(COPR_PREFIX):
            project = target[len(COPR_PREFIX):]
            self.execute(action, self.privileged(['dnf', 'copr', 'enable', '-y', project]))
            return Outcome(changed=True, detail=f'enabled copr {project}')

        self.execute(action, self.privileged(['dnf', 'config-manager', 'setopt', f'{target}.enabled=1']))
        return Outcome(changed=True, detail=f'enabled repo {target}')

    def _fedora_release(self) -> str:
        rc, out, err = run_command(['rpm', '-E', '%fedora'], timeout=30)
        release = out.strip()
        if rc != 0 or not release.isdigit():
            raise ApplyFailed(f"Cannot determine Fedora release: {err.strip() or release}")
        return release


def _repo_id_pattern(target: str) -> re.Pattern:
    """Match a repo id as printed by 'dnf repolist'.

    copr:owner/project is listed as copr:copr.fedorainfracloud.org:owner:project.
    """
    if target.startswith(COPR_PREFIX):
        project = target[len(COPR_PREFIX):].replace('/', ':')
        return re.compile(rf'^copr:.*:{re.escape(project)}$')
    return re.compile(rf'^{re.escape(target)}$')
