"""Single-run exclusivity for the state store.

A lock file next to the state file holds the owner's PID. A lock whose
PID is no longer alive is stale: it is never broken silently, the caller
must confirm and call break_stale().
"""

import json
import logging
import os
import socket
import tempfile
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class StateLocked(Exception):
    """Another live run holds the lock."""

    def __init__(self, path: Path, pid: Optional[int]):
        self.path = path
        self.pid = pid
        super().__init__(f"State is locked by running process {pid} ({path})")


class StaleLock(Exception):
    """Lock file left behind by a process that is gone."""

    def __init__(self, path: Path, pid: Optional[int]):
        self.path = path
        self.pid = pid
        super().__init__(
            f"Stale lock {path} from process {pid} which is no longer running"
        )


def lock_path_for(state_path: Path) -> Path:
    return state_path.with_name(state_path.name + '.lock')


def _process_alive(pid: int) -> bool:
    """Check if process with given PID exists."""
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def read_lock_owner(path: Path) -> Optional[dict]:
    """Return lock metadata, or None if no lock file exists."""
    try:
        text = path.read_text(encoding='utf-8')
    except FileNotFoundError:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {'pid': None}
    return data if isinstance(data, dict) else {'pid': None}


class StateLock:
    """Exclusive lock held for the duration of one run.

    Usage:
        with StateLock(lock_path_for(state_path)):
            executor.run(...)

    Raises (on acquire):
        StateLocked: Owner process is alive
        StaleLock: Owner process is gone; call break_stale() after confirmation
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._held = False

    def acquire(self) -> None:
        """Publish a fully written lock file with a single link().

        The lock never exists without its owner PID, so a concurrent run
        cannot mistake a lock being created for a stale one.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            'pid': os.getpid(),
            'host': socket.gethostname(),
            'acquired_at': time.time(),
        }
        fd, tmp_name = tempfile.mkstemp(prefix='.lock-', suffix='.tmp', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o644)
            try:
                os.link(tmp_name, self.path)
            except FileExistsError:
                owner = read_lock_owner(self.path) or {}
                pid = owner.get('pid')
                if isinstance(pid, int) and _process_alive(pid):
                    raise StateLocked(self.path, pid)
                raise StaleLock(self.path, pid if isinstance(pid, int) else None)
        finally:
            os.unlink(tmp_name)

        self._held = True
        logger.debug(f"Acquired state lock {self.path}")

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        self._held = False
        logger.debug(f"Released state lock {self.path}")

    def break_stale(self) -> None:
        """Remove a stale lock. Refuses if the owner is alive."""
        owner = read_lock_owner(self.path)
        if owner is None:
            return
        pid = owner.get('pid')
        if isinstance(pid, int) and _process_alive(pid):
            raise StateLocked(self.path, pid)
        logger.warning(f"Removing stale lock {self.path} (PID {pid})")
        self.path.unlink(missing_ok=True)

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> 'StateLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
