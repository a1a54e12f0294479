"""Durable execution state for provisioning runs.

Holds the latest ExecutionRecord per action id across runs plus metadata
about the most recent run, persisted as a single JSON document. Every
save() is atomic and fsynced before it returns, so a crash right after a
save never loses that record.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateError(Exception):
    """State file is unreadable or malformed."""


class RecordStatus(str, Enum):
    PENDING = 'pending'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    SKIPPED = 'skipped'


@dataclass
class ExecutionRecord:
    """Outcome of one action in one run.

    Attributes:
        action_id: Id of the action ('<Kind>:<target>')
        status: Final status for the run
        attempted_at: Timestamp when the record was produced
        error: Failure or skip reason
        detail: Adapter-provided description of what happened
        changed: True if apply() modified the host
        satisfied_at: When the action last succeeded; carried forward on
            skips so later runs still treat it as done
    """
    action_id: str
    status: RecordStatus = RecordStatus.PENDING
    attempted_at: Optional[float] = None
    error: Optional[str] = None
    detail: Optional[str] = None
    changed: bool = False
    satisfied_at: Optional[float] = None

    @classmethod
    def succeeded(cls, action_id: str, detail: str = '', changed: bool = False) -> 'ExecutionRecord':
        now = time.time()
        return cls(action_id, RecordStatus.SUCCEEDED, now, detail=detail or None,
                   changed=changed, satisfied_at=now)

    @classmethod
    def failed(cls, action_id: str, error: str) -> 'ExecutionRecord':
        return cls(action_id, RecordStatus.FAILED, time.time(), error=error)

    @classmethod
    def skipped(cls, action_id: str, reason: str,
                satisfied_at: Optional[float] = None) -> 'ExecutionRecord':
        return cls(action_id, RecordStatus.SKIPPED, time.time(), error=reason,
                   satisfied_at=satisfied_at)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'action_id': self.action_id,
            'status': self.status.value,
        }
        if self.attempted_at is not None:
            d['attempted_at'] = self.attempted_at
        if self.error is not None:
            d['error'] = self.error
        if self.detail is not None:
            d['detail'] = self.detail
        if self.changed:
            d['changed'] = True
        if self.satisfied_at is not None:
            d['satisfied_at'] = self.satisfied_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ExecutionRecord':
        return cls(
            action_id=data['action_id'],
            status=RecordStatus(data.get('status', 'pending')),
            attempted_at=data.get('attempted_at'),
            error=data.get('error'),
            detail=data.get('detail'),
            changed=bool(data.get('changed', False)),
            satisfied_at=data.get('satisfied_at'),
        )


class StateStore:
    """JSON-file backed mapping of action id to latest ExecutionRecord.

    The executor is the only writer; adapters never see the store.
    Concurrent writers are excluded by StateLock, not by this class.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> dict:
        if not self.path.exists():
            return {'version': STATE_VERSION, 'records': {}, 'last_run': None}
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Corrupt state file {self.path}: {e}")
        if not isinstance(data, dict) or not isinstance(data.get('records', {}), dict):
            raise StateError(f"State file {self.path} has unexpected structure")
        data.setdefault('records', {})
        data.setdefault('last_run', None)
        return data

    def _write(self, data: dict) -> None:
        """Atomically replace the state file and fsync it."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix='.state-', suffix='.tmp', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        _fsync_dir(self.path.parent)

    def load(self) -> dict[str, ExecutionRecord]:
        """Return latest record per action id (empty if no state yet)."""
        data = self._read()
        try:
            return {
                action_id: ExecutionRecord.from_dict(rec)
                for action_id, rec in data['records'].items()
            }
        except (KeyError, ValueError) as e:
            raise StateError(f"Invalid record in {self.path}: {e}")

    def save(self, action_id: str, record: ExecutionRecord) -> None:
        """Persist one record; durable when this returns."""
        data = self._read()
        data['records'][action_id] = record.to_dict()
        self._write(data)
        logger.debug(f"Saved record {action_id}={record.status.value} to {self.path}")

    def clear(self) -> None:
        """Forget every record and the last run."""
        self._write({'version': STATE_VERSION, 'records': {}, 'last_run': None})
        logger.info(f"Cleared state at {self.path}")

    def begin_run(self, action_ids: Iterable[str], force: bool = False,
                  continue_on_failure: bool = False,
                  manifest: Optional[str] = None) -> None:
        """Record which actions the current run covers, in plan order."""
        data = self._read()
        data['last_run'] = {
            'started_at': time.time(),
            'finished_at': None,
            'action_ids': list(action_ids),
            'manifest': manifest,
            'force': force,
            'continue_on_failure': continue_on_failure,
            'halted': False,
            'aborted': False,
        }
        self._write(data)

    def finish_run(self, halted: bool = False, aborted: bool = False) -> None:
        data = self._read()
        if data.get('last_run') is None:
            return
        data['last_run'].update({
            'finished_at': time.time(),
            'halted': halted,
            'aborted': aborted,
        })
        self._write(data)

    def last_run(self) -> Optional[dict]:
        """Metadata of the most recent run, or None."""
        return self._read().get('last_run')


def _fsync_dir(path: Path) -> None:
    """Flush a directory entry so a rename survives power loss."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return  # Not supported on this platform
    try:
        os.fsync(fd)
    except OSError as e:
        logger.debug(f"Directory fsync not supported for {path}: {e}")
    finally:
        os.close(fd)
