"""Tests for provision.report module."""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from provision.report import RunReport
from provision.state import ExecutionRecord, RecordStatus, StateStore


def _report(**kwargs):
    return RunReport(records=[
        ExecutionRecord.succeeded('InstallPackage:flatpak', detail='installed', changed=True),
        ExecutionRecord.failed('EnableRepository:flathub', 'timeout'),
        ExecutionRecord.skipped('InstallFlatpak:org.signal.Signal', 'blocked dependency'),
        ExecutionRecord('InstallPackage:git'),
    ], started_at=100.0, finished_at=112.5, **kwargs)


class TestRunReport:
    """Tests for RunReport summaries."""

    def test_counts(self):
        assert _report().counts == {'pending': 1, 'succeeded': 1, 'failed': 1, 'skipped': 1}

    def test_failures(self):
        failures = _report().failures
        assert [r.action_id for r in failures] == ['EnableRepository:flathub']

    def test_success(self):
        assert _report().success is False
        assert RunReport(records=[ExecutionRecord.succeeded('InstallPackage:git')]).success is True

    def test_aborted_is_not_success(self):
        report = RunReport(records=[ExecutionRecord.succeeded('InstallPackage:git')], aborted=True)
        assert report.success is False

    def test_duration(self):
        assert _report().duration == 12.5
        assert RunReport().duration is None

    def test_get(self):
        report = _report()
        assert report.get('EnableRepository:flathub').error == 'timeout'
        assert report.get('InstallPackage:missing') is None

    def test_to_dict(self):
        d = _report(halted=True).to_dict()
        assert d['success'] is False
        assert d['halted'] is True
        assert d['duration_seconds'] == 12.5
        assert d['failures'] == [{'action_id': 'EnableRepository:flathub', 'error': 'timeout'}]
        assert [a['action_id'] for a in d['actions']] == [
            'InstallPackage:flatpak',
            'EnableRepository:flathub',
            'InstallFlatpak:org.signal.Signal',
            'InstallPackage:git',
        ]

    def test_format_text(self):
        text = _report(halted=True).format_text()
        assert 'RUN REPORT' in text
        assert '[  OK  ] InstallPackage:flatpak - installed' in text
        assert '[ FAIL ] EnableRepository:flathub - timeout' in text
        assert '[ SKIP ] InstallFlatpak:org.signal.Signal - blocked dependency' in text
        assert '[ .... ] InstallPackage:git' in text
        assert '1 succeeded, 1 failed, 1 skipped, 1 pending' in text
        assert 'halted' in text

    def test_format_text_dry_run(self):
        text = RunReport(dry_run=True).format_text()
        assert 'DRY-RUN' in text


class TestFromStore:
    """Tests for rebuilding the last run from persisted state."""

    def test_no_run(self, state_path):
        assert RunReport.from_store(StateStore(state_path)) is None

    def test_rebuilds_last_run(self, state_path):
        store = StateStore(state_path)
        store.begin_run(['InstallPackage:a', 'InstallPackage:b', 'InstallPackage:c'])
        store.save('InstallPackage:a', ExecutionRecord.succeeded('InstallPackage:a'))
        store.save('InstallPackage:b', ExecutionRecord.failed('InstallPackage:b', 'boom'))
        store.finish_run(halted=True)

        report = RunReport.from_store(store)
        assert [r.action_id for r in report.records] == [
            'InstallPackage:a', 'InstallPackage:b', 'InstallPackage:c']
        assert report.records[1].status == RecordStatus.FAILED
        assert report.records[2].status == RecordStatus.PENDING
        assert report.halted is True

    def test_records_from_older_runs_show_pending(self, state_path):
        store = StateStore(state_path)
        old = ExecutionRecord.succeeded('InstallPackage:a')
        old.attempted_at = 1.0
        store.save('InstallPackage:a', old)
        store.begin_run(['InstallPackage:a'])
        store.finish_run(aborted=True)

        report = RunReport.from_store(store)
        assert report.records[0].status == RecordStatus.PENDING
        assert report.aborted is True
