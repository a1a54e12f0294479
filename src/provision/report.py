"""Run reporting."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from provision.state import ExecutionRecord, RecordStatus, StateStore

_MARKS = {
    RecordStatus.SUCCEEDED: '  OK  ',
    RecordStatus.FAILED: ' FAIL ',
    RecordStatus.SKIPPED: ' SKIP ',
    RecordStatus.PENDING: ' .... ',
}


@dataclass
class RunReport:
    """Per-action outcomes of one execution, in plan order."""
    records: list[ExecutionRecord] = field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    dry_run: bool = False
    halted: bool = False
    aborted: bool = False

    @property
    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in RecordStatus}
        for record in self.records:
            counts[record.status.value] += 1
        return counts

    @property
    def failures(self) -> list[ExecutionRecord]:
        return [r for r in self.records if r.status == RecordStatus.FAILED]

    @property
    def success(self) -> bool:
        """True when nothing failed and the run was not aborted."""
        return not self.failures and not self.aborted

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is not None and self.finished_at is not None:
            return self.finished_at - self.started_at
        return None

    def get(self, action_id: str) -> Optional[ExecutionRecord]:
        for record in self.records:
            if record.action_id == action_id:
                return record
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'success': self.success,
            'dry_run': self.dry_run,
            'halted': self.halted,
            'aborted': self.aborted,
            'counts': self.counts,
            'failures': [{'action_id': r.action_id, 'error': r.error} for r in self.failures],
            'actions': [r.to_dict() for r in self.records],
        }
        if self.duration is not None:
            d['duration_seconds'] = round(self.duration, 2)
        return d

    def format_text(self) -> str:
        lines = [
            "",
            "═══════════════════════════════════════════════════════════════",
            f"  RUN REPORT{' (DRY-RUN)' if self.dry_run else ''}",
        ]
        if self.started_at is not None:
            lines.append(f"  Started: {datetime.fromtimestamp(self.started_at).strftime('%Y-%m-%d %H:%M:%S')}")
        if self.duration is not None:
            lines.append(f"  Duration: {self.duration:.1f}s")
        lines.append("═══════════════════════════════════════════════════════════════")

        for record in self.records:
            reason = record.error or record.detail or ''
            suffix = f" - {reason}" if reason else ''
            lines.append(f"  [{_MARKS[record.status]}] {record.action_id}{suffix}")

        counts = self.counts
        lines.append("═══════════════════════════════════════════════════════════════")
        lines.append(
            "  Summary: "
            f"{counts['succeeded']} succeeded, {counts['failed']} failed, "
            f"{counts['skipped']} skipped, {counts['pending']} pending"
        )
        if self.halted:
            lines.append("  Run halted after first failure (use --continue-on-failure to keep going)")
        if self.aborted:
            lines.append("  Run aborted by user")
        if self.dry_run:
            lines.append("  Mode: DRY-RUN (no changes made)")
        if self.failures:
            lines.append("")
            lines.append("  Failures:")
            for record in self.failures:
                lines.append(f"    ✗ {record.action_id}: {record.error}")
        lines.append("═══════════════════════════════════════════════════════════════")
        return '\n'.join(lines)

    @classmethod
    def from_store(cls, store: StateStore) -> Optional['RunReport']:
        """Rebuild the report of the last run from persisted state.

        Actions the run never reached have no record newer than the run
        start and are shown as pending.
        """
        meta = store.last_run()
        if not meta:
            return None
        records = store.load()
        started_at = meta.get('started_at') or 0.0
        report = cls(
            started_at=meta.get('started_at'),
            finished_at=meta.get('finished_at'),
            halted=bool(meta.get('halted')),
            aborted=bool(meta.get('aborted')),
        )
        for action_id in meta.get('action_ids', []):
            record = records.get(action_id)
            if record is None or (record.attempted_at or 0.0) < started_at:
                record = ExecutionRecord(action_id)
            report.records.append(record)
        return report
