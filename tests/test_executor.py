"""Tests for provision.executor module.

Adapters are replaced with an in-memory fake through AdapterSet
overrides, so no test touches the host.
"""

import json
import os
import signal
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from backends import AdapterSet, ApplyFailed, BackendUnavailable, UnknownBackend, list_backends
from common import Outcome
from provision.action import Action
from provision.lock import StateLock, StateLocked, lock_path_for
from provision.executor import ALREADY_SUCCEEDED, BLOCKED_DEPENDENCY, Executor, RunOptions
from provision.plan import Plan
from provision.state import RecordStatus, StateStore


class FakeAdapter:
    """Adapter that records calls and keeps host state in a set."""

    def __init__(self, satisfied=(), fail=None, crash=(), missing_tool=(), unavailable=()):
        self.name = 'fake'
        self.kinds = frozenset()
        self.satisfied = set(satisfied)
        self.fail = dict(fail or {})
        self.crash = set(crash)
        self.missing_tool = set(missing_tool)
        self.unavailable = set(unavailable)
        self.probed: list[str] = []
        self.applied: list[str] = []

    def probe(self, action: Action) -> bool:
        self.probed.append(action.id)
        if action.id in self.missing_tool:
            raise BackendUnavailable('flatpak')
        return action.id in self.satisfied

    def apply(self, action: Action) -> Outcome:
        self.applied.append(action.id)
        if action.id in self.fail:
            raise ApplyFailed(self.fail[action.id])
        if action.id in self.crash:
            raise RuntimeError('adapter bug')
        if action.id in self.unavailable:
            return Outcome(changed=False, detail='not available in enabled repositories',
                           satisfied=False)
        self.satisfied.add(action.id)
        return Outcome(changed=True, detail='applied')


def _executor(adapter):
    overrides = {name: adapter for name in list_backends()}
    return Executor(adapters=AdapterSet(overrides=overrides), manifest_name='test')


@pytest.fixture
def workstation_plan():
    """git, then flathub before Signal."""
    return Plan.build([
        Action.create('InstallPackage', 'git'),
        Action.create('EnableRepository', 'flathub', params={'backend': 'flatpak'}),
        Action.create('InstallFlatpak', 'org.signal.Signal',
                      depends_on=['EnableRepository:flathub']),
    ])


@pytest.fixture
def store(state_path):
    return StateStore(state_path)


def _statuses(report):
    return {r.action_id: r.status for r in report.records}


class TestRunBasics:
    """Fresh runs, re-runs and force."""

    def test_first_run_applies_everything(self, workstation_plan, store):
        adapter = FakeAdapter()
        report = _executor(adapter).run(workstation_plan, store)

        assert report.success
        assert report.counts['succeeded'] == 3
        assert adapter.applied == workstation_plan.ids
        assert all(r.changed for r in report.records)

    def test_records_persisted(self, workstation_plan, store):
        _executor(FakeAdapter()).run(workstation_plan, store)
        records = store.load()
        assert set(records) == set(workstation_plan.ids)
        assert all(r.status == RecordStatus.SUCCEEDED for r in records.values())
        assert store.last_run()['finished_at'] is not None

    def test_second_run_skips_everything(self, workstation_plan, store):
        _executor(FakeAdapter()).run(workstation_plan, store)

        adapter = FakeAdapter()
        report = _executor(adapter).run(workstation_plan, store)

        assert report.success
        assert report.counts['skipped'] == 3
        assert all(r.error == ALREADY_SUCCEEDED for r in report.records)
        assert adapter.probed == []
        assert adapter.applied == []

    def test_third_run_still_skips(self, workstation_plan, store):
        _executor(FakeAdapter()).run(workstation_plan, store)
        _executor(FakeAdapter()).run(workstation_plan, store)

        adapter = FakeAdapter()
        report = _executor(adapter).run(workstation_plan, store)
        assert report.counts['skipped'] == 3
        assert adapter.applied == []

    def test_force_reapplies_everything(self, workstation_plan, store):
        adapter = FakeAdapter()
        executor = _executor(adapter)
        executor.run(workstation_plan, store)
        executor.run(workstation_plan, store)
        report = executor.run(workstation_plan, store, RunOptions(force=True))

        assert report.counts['succeeded'] == 3
        for action_id in workstation_plan.ids:
            assert adapter.applied.count(action_id) == 2

    def test_force_does_not_probe(self, workstation_plan, store):
        adapter = FakeAdapter(satisfied=workstation_plan.ids)
        _executor(adapter).run(workstation_plan, store, RunOptions(force=True))
        assert adapter.probed == []
        assert adapter.applied == workstation_plan.ids

    def test_probe_fast_path(self, workstation_plan, store):
        adapter = FakeAdapter(satisfied=['InstallPackage:git'])
        report = _executor(adapter).run(workstation_plan, store)

        git = report.get('InstallPackage:git')
        assert git.status == RecordStatus.SUCCEEDED
        assert git.changed is False
        assert 'InstallPackage:git' not in adapter.applied

    def test_new_action_after_manifest_edit(self, workstation_plan, store):
        _executor(FakeAdapter()).run(workstation_plan, store)

        edited = Plan.build(list(workstation_plan) + [Action.create('InstallPackage', 'vim')])
        adapter = FakeAdapter()
        report = _executor(adapter).run(edited, store)

        assert adapter.applied == ['InstallPackage:vim']
        assert report.get('InstallPackage:vim').status == RecordStatus.SUCCEEDED


class TestFailures:
    """Failure handling and blocked dependencies."""

    def test_failed_dependency_skips_dependent(self, workstation_plan, store):
        adapter = FakeAdapter(fail={'EnableRepository:flathub': 'timeout'})
        report = _executor(adapter).run(workstation_plan, store)

        assert not report.success
        assert report.halted
        statuses = _statuses(report)
        assert statuses['InstallPackage:git'] == RecordStatus.SUCCEEDED
        assert statuses['EnableRepository:flathub'] == RecordStatus.FAILED
        assert statuses['InstallFlatpak:org.signal.Signal'] == RecordStatus.SKIPPED
        assert report.get('InstallFlatpak:org.signal.Signal').error == BLOCKED_DEPENDENCY
        assert report.get('EnableRepository:flathub').error == 'timeout'
        assert 'InstallFlatpak:org.signal.Signal' not in adapter.applied

    def test_continue_on_failure_still_skips_dependent(self, workstation_plan, store):
        adapter = FakeAdapter(fail={'EnableRepository:flathub': 'timeout'})
        report = _executor(adapter).run(workstation_plan, store,
                                        RunOptions(continue_on_failure=True))

        assert not report.halted
        assert report.get('InstallFlatpak:org.signal.Signal').status == RecordStatus.SKIPPED
        assert report.get('InstallFlatpak:org.signal.Signal').error == BLOCKED_DEPENDENCY

    def test_halt_leaves_independent_actions_pending(self, store):
        plan = Plan.build([
            Action.create('InstallPackage', 'a'),
            Action.create('InstallPackage', 'b'),
            Action.create('InstallPackage', 'c', depends_on=['InstallPackage:a']),
        ])
        adapter = FakeAdapter(fail={'InstallPackage:a': 'boom'})
        report = _executor(adapter).run(plan, store)

        assert _statuses(report) == {
            'InstallPackage:a': RecordStatus.FAILED,
            'InstallPackage:b': RecordStatus.PENDING,
            'InstallPackage:c': RecordStatus.SKIPPED,
        }
        assert adapter.applied == ['InstallPackage:a']
        assert 'InstallPackage:b' not in store.load()

    def test_continue_runs_independent_actions(self, store):
        plan = Plan.build([
            Action.create('InstallPackage', 'a'),
            Action.create('InstallPackage', 'b'),
            Action.create('InstallPackage', 'c', depends_on=['InstallPackage:a']),
        ])
        adapter = FakeAdapter(fail={'InstallPackage:a': 'boom'})
        report = _executor(adapter).run(plan, store, RunOptions(continue_on_failure=True))

        assert report.get('InstallPackage:b').status == RecordStatus.SUCCEEDED
        assert report.get('InstallPackage:c').status == RecordStatus.SKIPPED

    def test_blocked_is_transitive(self, store):
        plan = Plan.build([
            Action.create('InstallPackage', 'a'),
            Action.create('InstallPackage', 'b', depends_on=['InstallPackage:a']),
            Action.create('InstallPackage', 'c', depends_on=['InstallPackage:b']),
        ])
        adapter = FakeAdapter(fail={'InstallPackage:a': 'boom'})
        report = _executor(adapter).run(plan, store, RunOptions(continue_on_failure=True))
        assert report.get('InstallPackage:c').error == BLOCKED_DEPENDENCY

    def test_failed_action_retried_next_run(self, workstation_plan, store):
        _executor(FakeAdapter(fail={'EnableRepository:flathub': 'timeout'})).run(workstation_plan, store)

        adapter = FakeAdapter()
        report = _executor(adapter).run(workstation_plan, store)

        assert report.success
        assert adapter.applied == ['EnableRepository:flathub', 'InstallFlatpak:org.signal.Signal']
        assert report.get('InstallPackage:git').error == ALREADY_SUCCEEDED

    def test_backend_unavailable_recorded(self, workstation_plan, store):
        adapter = FakeAdapter(missing_tool=['EnableRepository:flathub'])
        report = _executor(adapter).run(workstation_plan, store)
        assert report.get('EnableRepository:flathub').status == RecordStatus.FAILED
        assert 'not found' in report.get('EnableRepository:flathub').error

    def test_unexpected_exception_recorded(self, workstation_plan, store):
        adapter = FakeAdapter(crash=['InstallPackage:git'])
        report = _executor(adapter).run(workstation_plan, store)
        assert report.get('InstallPackage:git').error == 'RuntimeError: adapter bug'

    def test_previous_success_survives_blocked_skip(self, store):
        plan = Plan.build([
            Action.create('InstallPackage', 'a'),
            Action.create('InstallPackage', 'b', depends_on=['InstallPackage:a']),
        ])
        _executor(FakeAdapter()).run(plan, store)
        _executor(FakeAdapter(fail={'InstallPackage:a': 'boom'})).run(plan, store, RunOptions(force=True))

        adapter = FakeAdapter()
        _executor(adapter).run(plan, store)
        # b succeeded in the first run and was only blocked in the forced one
        assert adapter.applied == ['InstallPackage:a']


class TestDryRun:
    """Dry runs probe but never apply or persist."""

    def test_dry_run_applies_nothing(self, workstation_plan, store):
        adapter = FakeAdapter(satisfied=['InstallPackage:git'])
        report = _executor(adapter).run(workstation_plan, store, RunOptions(dry_run=True))

        assert adapter.applied == []
        assert report.dry_run
        assert report.get('InstallPackage:git').status == RecordStatus.SUCCEEDED
        assert report.get('EnableRepository:flathub').status == RecordStatus.PENDING
        assert report.get('EnableRepository:flathub').detail == 'would apply'

    def test_dry_run_writes_no_state(self, workstation_plan, store):
        _executor(FakeAdapter()).run(workstation_plan, store, RunOptions(dry_run=True))
        assert not store.path.exists()


class TestValidationAndAbort:

    def test_unknown_backend_fails_before_running(self, store):
        plan = Plan.build([
            Action.create('InstallPackage', 'git'),
            Action.create('InstallPackage', 'zellij', params={'backend': 'pip'}),
        ])
        adapter = FakeAdapter()
        with pytest.raises(UnknownBackend):
            _executor(adapter).run(plan, store)
        assert adapter.applied == []
        assert not store.path.exists()

    def test_abort_between_actions(self, workstation_plan, store):
        adapter = FakeAdapter()
        executor = _executor(adapter)
        original_apply = adapter.apply

        def apply_then_abort(action):
            executor.request_abort()
            return original_apply(action)

        adapter.apply = apply_then_abort
        report = executor.run(workstation_plan, store)

        assert report.aborted
        assert not report.success
        assert adapter.applied == ['InstallPackage:git']
        assert report.get('InstallPackage:git').status == RecordStatus.SUCCEEDED
        assert report.counts['pending'] == 2
        assert store.last_run()['aborted'] is True

    def test_signal_handlers_restored(self, workstation_plan, store):
        before = signal.getsignal(signal.SIGINT)
        _executor(FakeAdapter()).run(workstation_plan, store)
        assert signal.getsignal(signal.SIGINT) == before


class TestUnsatisfiedOutcome:
    """An apply that leaves the action unmet is not recorded as done."""

    def test_recorded_as_skipped(self, workstation_plan, store):
        adapter = FakeAdapter(unavailable=['InstallPackage:git'])
        report = _executor(adapter).run(workstation_plan, store)

        record = report.get('InstallPackage:git')
        assert record.status == RecordStatus.SKIPPED
        assert record.error == 'not available in enabled repositories'
        assert record.satisfied_at is None
        assert store.load()['InstallPackage:git'].satisfied_at is None
        assert report.success

    def test_dependents_still_run(self, store):
        plan = Plan.build([
            Action.create('InstallPackage', 'latte-dock'),
            Action.create('RunOnce', 'configure-dock', params={'command': 'true'},
                          depends_on=['InstallPackage:latte-dock']),
        ])
        adapter = FakeAdapter(unavailable=['InstallPackage:latte-dock'])
        report = _executor(adapter).run(plan, store)
        assert report.get('RunOnce:configure-dock').status == RecordStatus.SUCCEEDED

    def test_retried_on_next_run(self, workstation_plan, store):
        adapter = FakeAdapter(unavailable=['InstallPackage:git'])
        _executor(adapter).run(workstation_plan, store)

        # The repository providing it becomes available
        adapter.unavailable.clear()
        adapter.probed.clear()
        adapter.applied.clear()
        report = _executor(adapter).run(workstation_plan, store)

        assert adapter.probed == ['InstallPackage:git']
        assert adapter.applied == ['InstallPackage:git']
        assert report.get('InstallPackage:git').status == RecordStatus.SUCCEEDED
        assert store.load()['InstallPackage:git'].satisfied_at is not None


class TestLocking:
    """Executor.run holds the store lock for non-dry runs."""

    def test_lock_held_during_run(self, workstation_plan, store):
        adapter = FakeAdapter()
        seen = []
        original_apply = adapter.apply

        def apply_and_check(action):
            seen.append(lock_path_for(store.path).exists())
            return original_apply(action)

        adapter.apply = apply_and_check
        _executor(adapter).run(workstation_plan, store)

        assert seen == [True, True, True]
        assert not lock_path_for(store.path).exists()

    def test_refuses_when_locked(self, workstation_plan, store):
        lock = lock_path_for(store.path)
        lock.parent.mkdir(parents=True)
        lock.write_text(json.dumps({'pid': os.getpid()}))
        adapter = FakeAdapter()

        with pytest.raises(StateLocked):
            _executor(adapter).run(workstation_plan, store)
        assert adapter.applied == []
        assert lock.exists()
        assert not store.path.exists()

    def test_reuses_caller_lock(self, workstation_plan, store):
        lock = StateLock(lock_path_for(store.path))
        lock.acquire()
        try:
            _executor(FakeAdapter()).run(workstation_plan, store, lock=lock)
            assert lock.held
            assert lock.path.exists()
        finally:
            lock.release()

    def test_dry_run_takes_no_lock(self, workstation_plan, store):
        lock = lock_path_for(store.path)
        lock.parent.mkdir(parents=True)
        lock.write_text(json.dumps({'pid': os.getpid()}))
        report = _executor(FakeAdapter()).run(workstation_plan, store, RunOptions(dry_run=True))
        assert report.dry_run
