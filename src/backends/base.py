"""Backend adapter contract.

An adapter translates an Action into commands against one tool (dnf,
flatpak, systemctl, the filesystem, ...). probe() answers "is the host
already in this state?" without changing anything; apply() makes it so
and is itself idempotent.
"""

import logging
import shutil
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from common import TIMEOUT_RETURNCODE, Outcome, format_error_output, is_root, run_command
from provision.action import Action, ActionKind

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Per-action failure raised by an adapter."""


class BackendUnavailable(BackendError):
    """The tool an adapter drives is not installed."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"Backend tool '{tool}' not found on PATH")


class ApplyFailed(BackendError):
    """Applying an action failed for any reason other than a missing tool."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


@runtime_checkable
class BackendAdapter(Protocol):
    """Protocol for backend adapters."""
    name: str
    kinds: frozenset[ActionKind]

    def probe(self, action: Action) -> bool:
        """True if the host already satisfies the action."""

    def apply(self, action: Action) -> Outcome:
        """Bring the host into the state the action describes."""


@dataclass
class CommandBackend:
    """Shared plumbing for adapters that shell out to a CLI tool.

    Attributes:
        use_sudo: Prefix privileged commands with sudo when not root
        timeout: Default per-command timeout in seconds
    """
    name = 'command'
    kinds = frozenset()
    tool = ''

    use_sudo: bool = True
    timeout: int = 1800

    def require_tool(self, tool: Optional[str] = None) -> str:
        """Return the tool's path or raise BackendUnavailable."""
        tool = tool or self.tool
        path = shutil.which(tool)
        if path is None:
            raise BackendUnavailable(tool)
        return path

    def privileged(self, cmd: list[str]) -> list[str]:
        if self.use_sudo and not is_root():
            return ['sudo', '--non-interactive'] + cmd
        return cmd

    def timeout_for(self, action: Action) -> int:
        value = action.param('timeout')
        if value:
            try:
                return int(value)
            except ValueError:
                raise ApplyFailed(f"Invalid timeout '{value}' for {action.id}")
        return self.timeout

    def check(self, cmd: list[str], timeout: int = 60) -> bool:
        """Run a read-only query; True on exit status 0."""
        rc, _, _ = run_command(cmd, timeout=timeout)
        return rc == 0

    def execute(self, action: Action, cmd: list[str], **kwargs) -> str:
        """Run a mutating command; raise ApplyFailed on error. Returns stdout."""
        logger.info(f"[{action.id}] {' '.join(cmd)}")
        rc, out, err = run_command(cmd, timeout=self.timeout_for(action), **kwargs)
        if rc == TIMEOUT_RETURNCODE:
            raise ApplyFailed('timeout')
        if rc != 0:
            program = next(c for c in cmd if c != 'sudo' and not c.startswith('-'))
            raise ApplyFailed(f"{program} exited {rc}: {format_error_output(out, err)}")
        return out


def env_params(action: Action) -> dict:
    """Collect 'env.NAME' params into an environment mapping."""
    return {k[len('env.'):]: v for k, v in action.params.items() if k.startswith('env.')}
