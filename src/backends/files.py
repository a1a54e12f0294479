"""File adapter: write configuration files."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from backends import register_backend
from backends.base import ApplyFailed, CommandBackend
from common import Outcome
from provision.action import Action, ActionKind

logger = logging.getLogger(__name__)


def resolve_target(target: str) -> Path:
    """Expand ~ and $VARS in a target path."""
    return Path(os.path.expandvars(os.path.expanduser(target)))


@register_backend(ActionKind.WRITE_FILE)
class FileBackend(CommandBackend):
    """Writes a file with exact content.

    Params:
        content: Literal file content
        source: Path of a file whose content is copied (resolved against
            the manifest directory at load time)
        mode: Octal permission bits, e.g. '0644'
    """
    name = 'file'
    kinds = frozenset({ActionKind.WRITE_FILE})

    def _desired(self, action: Action) -> bytes:
        content = action.param('content')
        source = action.param('source')
        if content is not None and source is not None:
            raise ApplyFailed(f"{action.id}: give either 'content' or 'source', not both")
        if source is not None:
            try:
                return Path(source).read_bytes()
            except OSError as e:
                raise ApplyFailed(f"Cannot read source {source}: {e.strerror or e}")
        if content is None:
            raise ApplyFailed(f"{action.id} needs a 'content' or 'source' param")
        return content.encode('utf-8')

    def _mode(self, action: Action) -> Optional[int]:
        mode = action.param('mode')
        if mode is None:
            return None
        try:
            return int(mode, 8)
        except ValueError:
            raise ApplyFailed(f"Invalid mode '{mode}' for {action.id}")

    def probe(self, action: Action) -> bool:
        path = resolve_target(action.target)
        if not path.is_file():
            return False
        try:
            if path.read_bytes() != self._desired(action):
                return False
        except OSError:
            return False
        mode = self._mode(action)
        return mode is None or (path.stat().st_mode & 0o7777) == mode

    def apply(self, action: Action) -> Outcome:
        if self.probe(action):
            return Outcome(changed=False, detail='content unchanged')

        path = resolve_target(action.target)
        data = self._desired(action)
        mode = self._mode(action)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', dir=path.parent)
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                if mode is not None:
                    os.chmod(tmp_name, mode)
                elif path.exists():
                    os.chmod(tmp_name, path.stat().st_mode & 0o7777)
                else:
                    os.chmod(tmp_name, 0o644)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise ApplyFailed(f"Cannot write {path}: {e.strerror or e}")

        logger.info(f"[{action.id}] Wrote {len(data)} bytes to {path}")
        return Outcome(changed=True, detail=f'wrote {path}')
