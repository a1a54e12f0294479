"""Shell adapter: one-shot commands and installer scripts.

Covers the steps that have no declarative backend: vendor install
scripts fetched over HTTPS (rustup, Oh My Zsh, Miniconda), git clones,
chsh and the like. Idempotence comes from the 'creates' and 'unless'
guards; without either, only the state store prevents a second run.
"""

import logging
import shlex
from dataclasses import dataclass

import requests

from backends import register_backend
from backends.base import ApplyFailed, CommandBackend, env_params
from backends.files import resolve_target
from common import Outcome, run_command
from provision.action import Action, ActionKind

logger = logging.getLogger(__name__)


@register_backend(ActionKind.RUN_ONCE)
@dataclass
class ShellBackend(CommandBackend):
    """Runs a command or a downloaded script once.

    Params:
        command: Shell command line, run with 'sh -c'
        url: Script to download and feed to the interpreter on stdin
        args: Arguments passed to a downloaded script (shell-quoted string)
        interpreter: Program reading the script (default 'sh')
        creates: Path whose existence means the action is done
        unless: Command whose exit status 0 means the action is done
        sudo: Run with sudo (default false)
        cwd: Working directory
        env.<NAME>: Extra environment variables
    """
    name = 'shell'
    kinds = frozenset({ActionKind.RUN_ONCE})
    accepts_download_timeout = True

    download_timeout: int = 60

    def probe(self, action: Action) -> bool:
        if creates := action.param('creates'):
            if resolve_target(creates).exists():
                return True
        if unless := action.param('unless'):
            rc, _, _ = run_command(['sh', '-c', unless], timeout=60, env=env_params(action))
            return rc == 0
        return False

    def _cwd(self, action: Action):
        cwd = action.param('cwd')
        return resolve_target(cwd) if cwd else None

    def fetch_script(self, url: str) -> str:
        """Download an installer script over HTTPS."""
        if not url.startswith('https://'):
            raise ApplyFailed(f"Refusing to fetch script over insecure URL: {url}")
        logger.debug(f"Fetching {url}")
        try:
            resp = requests.get(url, timeout=self.download_timeout)
        except requests.exceptions.Timeout:
            raise ApplyFailed('timeout')
        except requests.exceptions.RequestException as e:
            raise ApplyFailed(f"Cannot download {url}: {e}")
        if resp.status_code != 200:
            raise ApplyFailed(f"Cannot download {url}: HTTP {resp.status_code}")
        return resp.text

    def apply(self, action: Action) -> Outcome:
        if self.probe(action):
            return Outcome(changed=False, detail='already done')

        command = action.param('command')
        url = action.param('url')
        if bool(command) == bool(url):
            raise ApplyFailed(f"{action.id} needs exactly one of 'command' or 'url'")

        env = env_params(action)
        cwd = self._cwd(action)
        if url:
            interpreter = action.param('interpreter', 'sh')
            self.require_tool(interpreter)
            script = self.fetch_script(url)
            cmd = [interpreter, '-s', '--'] + shlex.split(action.param('args', ''))
            input_text = script
        else:
            cmd = ['sh', '-c', command]
            input_text = None

        if action.flag('sudo'):
            cmd = self.privileged(cmd)

        if cwd is not None and not cwd.is_dir():
            raise ApplyFailed(f"Working directory {cwd} does not exist")
        self.execute(action, cmd, cwd=cwd, env=env or None, input_text=input_text)

        if (creates := action.param('creates')) and not resolve_target(creates).exists():
            raise ApplyFailed(f"Command finished but {creates} was not created")
        return Outcome(changed=True, detail=f"ran {url or command.splitlines()[0]}")

