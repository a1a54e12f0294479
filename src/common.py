"""Common utilities and types for workstation provisioning."""

import logging
import os
import shlex
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Outside the range of exit statuses (0-255) and signal returncodes (-1..-64)
TIMEOUT_RETURNCODE = -124


@dataclass(frozen=True)
class Outcome:
    """Result returned by a backend adapter's apply().

    Attributes:
        changed: True if the host was modified
        detail: Short description for the report
        satisfied: False when apply() finished without error but the host
            still does not meet the action (e.g. a package skipped as
            unavailable); such actions are retried on the next run
    """
    changed: bool
    detail: str = ''
    satisfied: bool = True


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input_text: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    A timeout is reported as TIMEOUT_RETURNCODE instead of raising.
    """
    logger.debug(f"Running: {shlex.join(cmd)}")
    if env is not None:
        env = {**os.environ, **env}
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input_text,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout or '', result.stderr or ''
    except subprocess.TimeoutExpired:
        return TIMEOUT_RETURNCODE, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def is_root() -> bool:
    """True when running as uid 0."""
    return os.geteuid() == 0


def format_error_output(stdout: str, stderr: str, limit: int = 400) -> str:
    """Pick the most useful tail of a failed command's output."""
    text = (stderr or '').strip() or (stdout or '').strip()
    if len(text) > limit:
        text = '...' + text[-limit:]
    return text


def sudo_validate(timeout: int = 300) -> bool:
    """Prompt for the sudo password (if needed) and cache the credentials.

    Runs attached to the terminal so sudo can ask interactively.
    """
    rc, _, _ = run_command(['sudo', '--validate'], timeout=timeout, capture=False)
    if rc != 0:
        logger.error(f"sudo authentication failed (exit {rc})")
    return rc == 0


class SudoKeepalive:
    """Refresh the cached sudo credentials in the background during a run.

    Long dnf transactions can outlast sudo's timestamp timeout, after
    which privileged commands run with --non-interactive would fail.
    """

    def __init__(self, interval: float = 60.0):
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            rc, _, err = run_command(['sudo', '--non-interactive', '--validate'], timeout=30)
            if rc != 0:
                logger.warning(f"Could not refresh sudo credentials: {err.strip()}")

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, name='sudo-keepalive', daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
